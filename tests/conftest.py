"""
Shared pytest fixtures for sitefleet tests.

This module provides:
- An in-memory sqlite database, entity store and run ledger
- A controllable clock
- Fake collaborators (DNS, certificates, publisher, prober, content)
- A small worker pool that is shut down after each test
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import pytest

from sitefleet.db import Database
from sitefleet.execution.pool import WorkerPool
from sitefleet.models import (
    CertificateResult,
    HealthStatus,
    NameserverStatus,
    Post,
    PostDraft,
    Server,
    Site,
)
from sitefleet.scheduling.ledger import RunLedger
from sitefleet.settings import get_settings
from sitefleet.store import EntityStore

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# Fake collaborators
# =============================================================================


class FakeDns:
    def __init__(self, default: NameserverStatus = NameserverStatus.ACTIVE) -> None:
        self.default = default
        self.answers: dict[str, NameserverStatus | Exception] = {}
        self.delay = 0.0
        self.calls: list[str] = []

    def check_nameservers(self, hostname: str) -> NameserverStatus:
        self.calls.append(hostname)
        if self.delay:
            time.sleep(self.delay)
        answer = self.answers.get(hostname, self.default)
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeCertificates:
    def __init__(self, valid_for: timedelta = timedelta(days=90), now: FixedClock | None = None) -> None:
        self.valid_for = valid_for
        self.clock = now or FixedClock()
        self.fail_with: str | None = None
        self.calls: list[str] = []

    def issue_or_renew(self, hostname: str) -> CertificateResult:
        self.calls.append(hostname)
        if self.fail_with:
            return CertificateResult(active=False, detail=self.fail_with)
        return CertificateResult(active=True, expires_at=self.clock() + self.valid_for)


class FakePublisher:
    """Idempotent publisher: one artifact per post id."""

    def __init__(self) -> None:
        self.artifacts: dict[int, str] = {}
        self.calls: Counter[int] = Counter()
        self.order: list[int] = []
        self.fail_for: set[int] = set()
        self._lock = threading.Lock()

    def publish(self, post: Post, site: Site) -> None:
        with self._lock:
            self.calls[post.id] += 1
            self.order.append(post.id)
        if post.id in self.fail_for:
            raise RuntimeError(f"target for site {site.id} rejected post {post.id}")
        with self._lock:
            self.artifacts[post.id] = f"{site.id}/{post.slug}"


class FakeProber:
    def __init__(self, default: HealthStatus = HealthStatus.HEALTHY) -> None:
        self.default = default
        self.answers: dict[str, HealthStatus | Exception] = {}
        self.delay = 0.0
        self.calls: list[tuple[str, float]] = []

    def probe(self, server: Server, timeout: float) -> HealthStatus:
        self.calls.append((server.name, timeout))
        if self.delay:
            time.sleep(self.delay)
        answer = self.answers.get(server.name, self.default)
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeContent:
    def __init__(self) -> None:
        self.fail_with: Exception | None = None
        self.delay = 0.0
        self.calls: list[tuple[int, str]] = []

    def draft_post(self, site: Site, post_type: str) -> PostDraft:
        self.calls.append((site.id, post_type))
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        n = len(self.calls)
        return PostDraft(title=f"Draft {n} for site {site.id}", body="First.\n\nSecond.")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database.open(":memory:")
    yield database
    database.close()


@pytest.fixture
def store(db: Database) -> EntityStore:
    return EntityStore(db)


@pytest.fixture
def ledger(db: Database) -> RunLedger:
    return RunLedger(db, instance_id="test-instance")


@pytest.fixture
def pool(clock: FixedClock) -> Generator[WorkerPool, None, None]:
    worker_pool = WorkerPool(size=4, unit_timeout=5.0, clock=clock)
    yield worker_pool
    worker_pool.shutdown(wait=True)


@pytest.fixture
def dns() -> FakeDns:
    return FakeDns()


@pytest.fixture
def certificates(clock: FixedClock) -> FakeCertificates:
    return FakeCertificates(now=clock)


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def content() -> FakeContent:
    return FakeContent()


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Generator[None, None, None]:
    """Keep tests away from ~/.sitefleet and any developer .env."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SITEFLEET_DATABASE_PATH", str(tmp_path / "fleet.db"))
    monkeypatch.setenv("SITEFLEET_PUBLISH_ROOT", str(tmp_path / "public"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
