"""Trigger scheduler: fires named periodic triggers under single-flight.

Manifesto:
    The scheduler is the single clock of the reconciliation core. It holds a
    small static table of named triggers, checks each one on every tick,
    and hands the due ones to a trigger executor so the tick loop never
    blocks on a sweep. Overlap protection comes from the run ledger, which
    makes it safe to run more than one scheduler against the same database.

Tags:
    scheduling, trigger, single-flight, beat-as-poller, sitefleet

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  TRIGGER SCHEDULER                                                           │
│                                                                              │
│   backend (daemon thread) ── every tick_seconds ──► tick(now)                │
│                                                                              │
│   tick(now):                                                                 │
│     for trigger in triggers:                                                 │
│       ├── not due (now - last < interval)      → next                        │
│       ├── ledger running and not stale         → skipped                     │
│       ├── ledger.try_start() lost              → skipped                     │
│       └── won → trigger executor ── runnable(now)                            │
│                                         └── finally ledger.finish(error)     │
│                                                                              │
│   run_now(name)  same ledger path, runs in the caller's thread               │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from sitefleet.errors import ConfigError, TriggerNotFoundError
from sitefleet.logging import LogContext, get_logger
from sitefleet.models import TriggerRun
from sitefleet.scheduling.backend import BackendHealth, ThreadTickBackend, TickBackend
from sitefleet.scheduling.ledger import RunLedger
from sitefleet.timestamps import Clock, utc_now

logger = get_logger(__name__)

TriggerRunnable = Callable[[datetime], Any]


@dataclass(frozen=True)
class Trigger:
    """A named periodic action."""

    name: str
    interval: timedelta
    runnable: TriggerRunnable
    stale_after: timedelta

    def is_due(self, entry: TriggerRun | None, now: datetime) -> bool:
        """Due if never started or one interval has passed since the last run."""
        if entry is None or entry.started_at is None:
            return True
        last = entry.finished_at or entry.started_at
        return now - last >= self.interval


@dataclass
class SchedulerStats:
    """Statistics for the trigger scheduler."""

    tick_count: int = 0
    fired: int = 0
    skipped: int = 0
    succeeded: int = 0
    failed: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None


@dataclass
class SchedulerHealth:
    """Health of the scheduler: backend liveness plus ledger state."""

    healthy: bool
    backend: BackendHealth
    running_triggers: list[str] = field(default_factory=list)
    stale_triggers: list[str] = field(default_factory=list)
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend.to_dict(),
            "running_triggers": self.running_triggers,
            "stale_triggers": self.stale_triggers,
            "last_tick": self.stats.last_tick.isoformat() if self.stats.last_tick else None,
            "stats": {
                "tick_count": self.stats.tick_count,
                "fired": self.stats.fired,
                "skipped": self.stats.skipped,
                "succeeded": self.stats.succeeded,
                "failed": self.stats.failed,
            },
        }


class TriggerScheduler:
    """Fires registered triggers through the run ledger.

    Example:
        >>> scheduler = TriggerScheduler(RunLedger(db))
        >>> scheduler.register_trigger("check-servers", timedelta(minutes=10), sweep_servers)
        >>> futures = scheduler.tick(now)      # or scheduler.start()
    """

    def __init__(
        self,
        ledger: RunLedger,
        backend: TickBackend | None = None,
        *,
        clock: Clock = utc_now,
        tick_seconds: float = 1.0,
        staleness_multiplier: float = 3.0,
        shutdown_grace_seconds: float = 10.0,
    ) -> None:
        self.ledger = ledger
        self.backend = backend or ThreadTickBackend()
        self.tick_seconds = tick_seconds
        self.staleness_multiplier = staleness_multiplier
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self._clock = clock
        self._triggers: dict[str, Trigger] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._in_flight: set[Future] = set()
        self._active: dict[str, Future] = {}
        self._stats = SchedulerStats()
        self._lock = threading.Lock()
        self._running = False

    # === Registration ===

    def register_trigger(
        self,
        name: str,
        interval: timedelta | float,
        runnable: TriggerRunnable,
        stale_after: timedelta | float | None = None,
    ) -> Trigger:
        """Add a trigger; names are unique."""
        if name in self._triggers:
            raise ConfigError(f"Trigger already registered: {name}")
        if self._executor is not None:
            raise ConfigError(f"Cannot register trigger {name} after the scheduler has fired")
        if not isinstance(interval, timedelta):
            interval = timedelta(seconds=interval)
        if interval <= timedelta(0):
            raise ConfigError(f"Trigger {name} needs a positive interval")
        if stale_after is None:
            stale_after = interval * self.staleness_multiplier
        elif not isinstance(stale_after, timedelta):
            stale_after = timedelta(seconds=stale_after)

        trigger = Trigger(name, interval, runnable, stale_after)
        self._triggers[name] = trigger
        logger.debug(
            "trigger_registered",
            trigger=name,
            interval_seconds=interval.total_seconds(),
            stale_after_seconds=stale_after.total_seconds(),
        )
        return trigger

    @property
    def triggers(self) -> list[Trigger]:
        return list(self._triggers.values())

    def get_trigger(self, name: str) -> Trigger:
        try:
            return self._triggers[name]
        except KeyError:
            raise TriggerNotFoundError(name) from None

    # === Lifecycle ===

    def start(self) -> None:
        """Start ticking on the backend's thread."""
        if self._running:
            logger.warning("scheduler_already_running")
            return
        logger.info(
            "scheduler_starting",
            backend=self.backend.name,
            tick_seconds=self.tick_seconds,
            triggers=sorted(self._triggers),
        )
        self.backend.start(self.tick, self.tick_seconds)
        self._running = True

    def stop(self) -> None:
        """Stop ticking and wait for in-flight runs up to the grace period."""
        if self._running:
            logger.info("scheduler_stopping")
            self.backend.stop()
            self._running = False
        elif self._executor is None:
            return

        with self._lock:
            pending = set(self._in_flight)
        if pending:
            _, not_done = wait_futures(pending, timeout=self.shutdown_grace_seconds)
            if not_done:
                logger.warning("scheduler_stopped_with_running_triggers", running=len(not_done))
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # === Tick Processing ===

    def tick(self, now: datetime | None = None) -> list[Future]:
        """Check every trigger once and fire the due ones.

        Returns the futures of the runs started by this tick.
        """
        now = now or self._clock()
        with self._lock:
            self._stats.tick_count += 1
            self._stats.last_tick = now

        fired: list[Future] = []
        for trigger in self._triggers.values():
            try:
                owner = self._claim(trigger, now)
            except Exception as exc:
                with self._lock:
                    self._stats.last_error = str(exc)
                logger.exception("trigger_claim_failed", trigger=trigger.name)
                continue
            if owner is None:
                continue
            fired.append(self._submit(trigger, owner, now))
        return fired

    def _claim(self, trigger: Trigger, now: datetime) -> str | None:
        entry = self.ledger.get(trigger.name)
        if not trigger.is_due(entry, now):
            return None
        if self._running_here(trigger.name):
            # stale entries are reclaimed only when no run is alive here
            self._count_skip(trigger, "running_here")
            return None
        if entry is not None and entry.running and not entry.is_stale(now, trigger.stale_after):
            self._count_skip(trigger, "running")
            return None
        owner = self.ledger.try_start(trigger.name, now, trigger.stale_after)
        if owner is None:
            self._count_skip(trigger, "contended")
        return owner

    def _count_skip(self, trigger: Trigger, reason: str) -> None:
        with self._lock:
            self._stats.skipped += 1
        logger.debug("trigger_skipped", trigger=trigger.name, reason=reason)

    def _submit(self, trigger: Trigger, owner: str, now: datetime) -> Future:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=max(1, len(self._triggers)),
                    thread_name_prefix="sitefleet-trigger",
                )
            self._stats.fired += 1
            future = self._executor.submit(self._execute, trigger, owner, now)
            self._in_flight.add(future)
            self._active[trigger.name] = future
        future.add_done_callback(self._forget)
        return future

    def _running_here(self, name: str) -> bool:
        with self._lock:
            future = self._active.get(name)
        return future is not None and not future.done()

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._in_flight.discard(future)
            for name in [n for n, f in self._active.items() if f is future]:
                del self._active[name]

    def _execute(self, trigger: Trigger, owner: str, fire_time: datetime) -> Any:
        error: str | None = None
        result: Any = None
        with LogContext(trigger=trigger.name, run=owner):
            logger.info("trigger_started", fire_time=fire_time.isoformat())
            try:
                result = trigger.runnable(fire_time)
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                with self._lock:
                    self._stats.failed += 1
                    self._stats.last_error = error
                logger.exception("trigger_failed")
            else:
                with self._lock:
                    self._stats.succeeded += 1
                logger.info("trigger_finished")
            finally:
                self.ledger.finish(trigger.name, owner, self._clock(), error)
        return result

    # === Manual Operations ===

    def run_now(self, name: str) -> bool:
        """Fire *name* immediately in the caller's thread.

        Honours single-flight: returns False if another run holds the entry.
        The trigger's runnable exceptions are recorded in the ledger, not
        raised.
        """
        trigger = self.get_trigger(name)
        now = self._clock()
        entry = self.ledger.get(name)
        if entry is not None and entry.running and not entry.is_stale(now, trigger.stale_after):
            self._count_skip(trigger, "running")
            return False
        owner = self.ledger.try_start(name, now, trigger.stale_after)
        if owner is None:
            self._count_skip(trigger, "contended")
            return False
        with self._lock:
            self._stats.fired += 1
        self._execute(trigger, owner, now)
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for every in-flight trigger run; True if none is left."""
        with self._lock:
            pending = set(self._in_flight)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    # === Health & Stats ===

    def stats(self) -> SchedulerStats:
        with self._lock:
            return replace(self._stats)

    def health(self) -> SchedulerHealth:
        now = self._clock()
        running: list[str] = []
        stale: list[str] = []
        for entry in self.ledger.entries():
            trigger = self._triggers.get(entry.name)
            if not entry.running or trigger is None:
                continue
            running.append(entry.name)
            if entry.is_stale(now, trigger.stale_after):
                stale.append(entry.name)

        backend_health = self.backend.health()
        return SchedulerHealth(
            healthy=self._running and backend_health.healthy and not stale,
            backend=backend_health,
            running_triggers=running,
            stale_triggers=stale,
            stats=self.stats(),
        )
