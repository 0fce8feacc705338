"""Worker pool: bounded concurrent execution of work units.

Manifesto:
    Every reconciler shares one pool, so a slow DNS provider can take at
    most ``size`` threads and the other sweeps keep moving. The pool never
    retries: a failed or timed-out unit is reported once and the next sweep
    decides what to do about it.

ARCHITECTURE
────────────
::

    WorkerPool(size=8, unit_timeout=60)
      ├── .submit(unit, action, on_complete)  ─ blocks while all slots are busy
      │       │
      │       ├── worker thread ── action(unit) ──┐
      │       └── deadline timer ─────────────────┤ first one wins
      │                                           ▼
      │                              on_complete(UnitResult)  (exactly once)
      ├── .stats()
      └── .shutdown()

    The slot is released when the worker thread returns, not when the
    deadline fires, so a hung action keeps occupying its slot.

Tags:
    execution, worker-pool, thread-pool, backpressure, timeout, sitefleet

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from sitefleet.errors import ErrorCategory, FleetError, PoolSaturatedError, UnitTimeoutError
from sitefleet.execution.work import UnitOutcome, UnitResult, WorkUnit
from sitefleet.logging import get_logger
from sitefleet.timestamps import Clock, utc_now

logger = get_logger(__name__)

UnitAction = Callable[[WorkUnit], Any]
CompletionCallback = Callable[[UnitResult], None]


class UnitHandle:
    """Handle on a submitted unit.

    ``wait`` returns only after the completion callback has run, so a caller
    that waits on every handle of a sweep observes all applied results.
    """

    def __init__(self, unit: WorkUnit) -> None:
        self.unit = unit
        self._lock = threading.Lock()
        self._claimed = False
        self._done = threading.Event()
        self._result: UnitResult | None = None

    def _claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    def _resolve(self, result: UnitResult) -> None:
        self._result = result
        self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def result(self) -> UnitResult | None:
        return self._result

    def wait(self, timeout: float | None = None) -> UnitResult | None:
        """Block until the unit is reported, or *timeout* seconds elapse."""
        self._done.wait(timeout)
        return self._result


class WorkerPool:
    """Bounded thread pool with per-unit deadlines.

    Example:
        >>> pool = WorkerPool(size=2, unit_timeout=5.0)
        >>> handle = pool.submit(unit, lambda u: "ok")
        >>> handle.wait(1.0).outcome
        <UnitOutcome.SUCCEEDED: 'succeeded'>
        >>> pool.shutdown()
    """

    def __init__(
        self,
        size: int = 8,
        unit_timeout: float = 60.0,
        submit_timeout: float | None = None,
        clock: Clock = utc_now,
    ) -> None:
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.size = size
        self.unit_timeout = unit_timeout
        self.submit_timeout = submit_timeout
        self._clock = clock
        self._slots = threading.BoundedSemaphore(size)
        self._executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix="sitefleet-worker")
        self._lock = threading.Lock()
        self._closed = False
        self._in_flight = 0
        self._counts = {
            "submitted": 0,
            UnitOutcome.SUCCEEDED.value: 0,
            UnitOutcome.FAILED.value: 0,
            UnitOutcome.TIMED_OUT.value: 0,
            "late_discarded": 0,
            "callback_errors": 0,
        }

    def submit(
        self,
        unit: WorkUnit,
        action: UnitAction,
        on_complete: CompletionCallback | None = None,
    ) -> UnitHandle:
        """Run ``action(unit)`` on a worker thread.

        Blocks while every slot is busy. With ``submit_timeout`` set, raises
        :class:`PoolSaturatedError` instead of waiting longer than that.
        """
        if self._closed:
            raise FleetError("Worker pool is shut down", category=ErrorCategory.ORCHESTRATION)

        if self.submit_timeout is None:
            self._slots.acquire()
        elif not self._slots.acquire(timeout=self.submit_timeout):
            raise PoolSaturatedError(
                f"No free worker slot within {self.submit_timeout:g}s",
                context={"unit_id": unit.unit_id, "pool_size": self.size},
            )

        handle = UnitHandle(unit)
        with self._lock:
            self._in_flight += 1
            self._counts["submitted"] += 1

        try:
            self._executor.submit(self._run, handle, action, on_complete)
        except RuntimeError as exc:
            self._release_slot()
            raise FleetError(
                "Worker pool is shut down", category=ErrorCategory.ORCHESTRATION, cause=exc
            ) from exc
        return handle

    def _run(
        self,
        handle: UnitHandle,
        action: UnitAction,
        on_complete: CompletionCallback | None,
    ) -> None:
        unit = handle.unit
        started_at = self._clock()
        timer = threading.Timer(
            self.unit_timeout, self._expire, args=(handle, on_complete, started_at)
        )
        timer.daemon = True
        timer.start()
        try:
            try:
                value = action(unit)
            except Exception as exc:
                result = UnitResult(
                    unit, UnitOutcome.FAILED, error=exc,
                    started_at=started_at, finished_at=self._clock(),
                )
            else:
                result = UnitResult(
                    unit, UnitOutcome.SUCCEEDED, value=value,
                    started_at=started_at, finished_at=self._clock(),
                )
            finally:
                timer.cancel()
            self._settle(handle, result, on_complete)
        finally:
            self._release_slot()

    def _expire(
        self,
        handle: UnitHandle,
        on_complete: CompletionCallback | None,
        started_at: Any,
    ) -> None:
        unit = handle.unit
        result = UnitResult(
            unit,
            UnitOutcome.TIMED_OUT,
            error=UnitTimeoutError(unit.unit_id, self.unit_timeout),
            started_at=started_at,
            finished_at=self._clock(),
        )
        self._settle(handle, result, on_complete)

    def _settle(
        self,
        handle: UnitHandle,
        result: UnitResult,
        on_complete: CompletionCallback | None,
    ) -> None:
        unit = result.unit
        if not handle._claim():
            with self._lock:
                self._counts["late_discarded"] += 1
            logger.warning(
                "late_unit_result_discarded",
                unit_id=unit.unit_id,
                target=str(unit.target),
                outcome=result.outcome.value,
            )
            return

        with self._lock:
            self._counts[result.outcome.value] += 1

        if result.outcome is UnitOutcome.TIMED_OUT:
            logger.warning(
                "unit_timed_out", unit_id=unit.unit_id, target=str(unit.target),
                timeout=self.unit_timeout,
            )
        elif result.outcome is UnitOutcome.FAILED:
            logger.warning(
                "unit_failed", unit_id=unit.unit_id, target=str(unit.target),
                error=result.error_message,
            )

        try:
            if on_complete is not None:
                on_complete(result)
        except Exception:
            with self._lock:
                self._counts["callback_errors"] += 1
            logger.exception(
                "unit_callback_failed", unit_id=unit.unit_id, target=str(unit.target)
            )
        finally:
            handle._resolve(result)

    def _release_slot(self) -> None:
        with self._lock:
            self._in_flight -= 1
        self._slots.release()

    @property
    def in_flight(self) -> int:
        """Units whose worker thread has not returned yet."""
        with self._lock:
            return self._in_flight

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {**self._counts, "in_flight": self._in_flight, "size": self.size}

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting units; optionally wait for running ones."""
        self._closed = True
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown(wait=True)
