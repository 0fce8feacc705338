"""Reconciler capability and the sweep runner shared by every trigger.

A reconciler turns "what the store says" into "the minimal set of work
units that move entities toward their desired state". It answers four
questions, and :func:`run_sweep` drives them the same way for every kind:

::

    select_candidates(now)      which entities need attention
          │
          ▼
    plan_unit(candidate, now)   arm the entity, emit one WorkUnit (or None)
          │
          ▼  pool.submit(unit, execute, apply_result)
    execute(unit)               collaborator I/O on a worker thread
          │
          ▼
    apply_result(result)        conditional write back to the store

Tags:
    reconciler, sweep, work-unit, sitefleet

Doc-Types:
    api-reference
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sitefleet.errors import PoolSaturatedError
from sitefleet.execution.pool import UnitHandle, WorkerPool
from sitefleet.execution.work import UnitOutcome, UnitResult, WorkUnit
from sitefleet.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Reconciler(Protocol):
    """Capability implemented by the four reconciler kinds."""

    trigger: str
    kind: str

    def select_candidates(self, now: datetime) -> Sequence[Any]: ...

    def plan_unit(self, candidate: Any, now: datetime) -> WorkUnit | None: ...

    def execute(self, unit: WorkUnit) -> Any: ...

    def apply_result(self, result: UnitResult) -> None: ...


@dataclass
class SweepReport:
    """Outcome counts of one sweep."""

    trigger: str
    started_at: datetime
    candidates: int = 0
    planned: int = 0
    skipped: int = 0
    planning_errors: int = 0
    unsubmitted: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    pending: int = 0

    @property
    def complete(self) -> bool:
        """True if every submitted unit was reported before the wait ended."""
        return self.pending == 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


def run_sweep(
    reconciler: Reconciler,
    pool: WorkerPool,
    now: datetime,
    wait_timeout: float | None = None,
) -> SweepReport:
    """Run one sweep of *reconciler* on *pool*.

    Waits at most ``wait_timeout`` seconds for the submitted units. Units
    still running after that keep running and apply their results on their
    own; they are counted as ``pending``.

    Raises:
        Exception: anything ``select_candidates`` raises, so the scheduler
            records it as a trigger-level fault.
    """
    report = SweepReport(trigger=reconciler.trigger, started_at=now)
    candidates = reconciler.select_candidates(now)
    report.candidates = len(candidates)

    handles: list[UnitHandle] = []
    for index, candidate in enumerate(candidates):
        try:
            unit = reconciler.plan_unit(candidate, now)
        except Exception:
            report.planning_errors += 1
            logger.exception("unit_planning_failed", kind=reconciler.kind)
            continue
        if unit is None:
            report.skipped += 1
            continue

        try:
            handles.append(pool.submit(unit, reconciler.execute, reconciler.apply_result))
        except PoolSaturatedError as exc:
            report.unsubmitted = len(candidates) - index
            logger.warning("sweep_pool_saturated", kind=reconciler.kind, error=str(exc),
                           unsubmitted=report.unsubmitted)
            break
        report.planned += 1

    deadline = None if wait_timeout is None else time.monotonic() + wait_timeout
    for handle in handles:
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        result = handle.wait(remaining)
        if result is None:
            report.pending += 1
        elif result.outcome is UnitOutcome.SUCCEEDED:
            report.succeeded += 1
        elif result.outcome is UnitOutcome.TIMED_OUT:
            report.timed_out += 1
        else:
            report.failed += 1

    log = logger.info if report.complete else logger.warning
    log("sweep_finished", **{k: v for k, v in report.to_dict().items() if k != "started_at"})
    return report
