"""Tick backends: the timing half of the scheduler.

A backend only calls the tick callback at a fixed interval. Deciding which
triggers are due and firing them lives in :class:`TriggerScheduler`, which
is why tests can drive ``scheduler.tick(now)`` directly without any thread.

┌──────────────────────────────────────────────────────────────────────┐
│  ThreadTickBackend                                                   │
│                                                                      │
│   start(callback, interval)                                          │
│      └── daemon thread:                                              │
│            while not stop_event.wait(interval):                      │
│                tick_count += 1; last_tick = now()                    │
│                callback()          (exceptions logged, loop goes on) │
│                                                                      │
│   stop(timeout)                                                      │
│      └── stop_event.set(); thread.join(timeout)                      │
└──────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sitefleet.logging import get_logger
from sitefleet.timestamps import utc_now

logger = get_logger(__name__)

TickCallback = Callable[[], None]


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            **self.extra,
        }


@runtime_checkable
class TickBackend(Protocol):
    """Protocol for pluggable tick sources."""

    name: str

    def start(self, tick_callback: TickCallback, interval_seconds: float = 1.0) -> None: ...

    def stop(self, timeout: float = 5.0) -> None: ...

    def health(self) -> BackendHealth: ...


class ThreadTickBackend:
    """Daemon-thread tick loop.

    Example:
        >>> backend = ThreadTickBackend()
        >>> backend.start(lambda: print("tick"), interval_seconds=1.0)
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 1.0
        self._started = False
        self._lock = threading.Lock()

    def start(self, tick_callback: TickCallback, interval_seconds: float = 1.0) -> None:
        if self._started:
            logger.warning("tick_backend_already_started", backend=self.name)
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _loop() -> None:
            logger.info("tick_backend_started", backend=self.name, interval_seconds=interval_seconds)
            while not self._stop_event.wait(interval_seconds):
                with self._lock:
                    self._tick_count += 1
                    self._last_tick = utc_now()
                try:
                    tick_callback()
                except Exception:
                    logger.exception("tick_failed", backend=self.name)
            logger.info("tick_backend_stopped", backend=self.name)

        self._thread = threading.Thread(target=_loop, daemon=True, name="sitefleet-scheduler")
        self._thread.start()
        self._started = True

    def stop(self, timeout: float = 5.0) -> None:
        """Stop ticking; waits up to *timeout* seconds for the current tick."""
        if not self._started:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("tick_backend_stop_unclean", backend=self.name)
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def health(self) -> BackendHealth:
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            extra={"interval_seconds": self._interval},
        )
