"""Scheduling: tick backend, run ledger and trigger scheduler.

Tags:
    scheduling, single-flight, sitefleet
"""

from sitefleet.scheduling.backend import BackendHealth, ThreadTickBackend, TickBackend
from sitefleet.scheduling.ledger import RunLedger
from sitefleet.scheduling.scheduler import (
    SchedulerHealth,
    SchedulerStats,
    Trigger,
    TriggerScheduler,
)

__all__ = [
    "BackendHealth",
    "RunLedger",
    "SchedulerHealth",
    "SchedulerStats",
    "ThreadTickBackend",
    "TickBackend",
    "Trigger",
    "TriggerScheduler",
]
