"""Execution layer: work units and the shared worker pool.

Tags:
    execution, worker-pool, sitefleet
"""

from sitefleet.execution.pool import UnitHandle, WorkerPool
from sitefleet.execution.work import Target, UnitOutcome, UnitResult, WorkUnit

__all__ = [
    "Target",
    "UnitHandle",
    "UnitOutcome",
    "UnitResult",
    "WorkUnit",
    "WorkerPool",
]
