"""Entity models for the reconciliation core.

Defines the records the reconcilers read and advance:

- Domain: DNS/SSL lifecycle, advanced by the domain status reconciler
- Site: publishing state plus autopost configuration
- Post: scheduled content, advanced by the post publisher
- Server: hosting server health, advanced by the health checker
- TriggerRun: run ledger entry backing single-flight

Domain status transitions are enforced via ``DOMAIN_VALID_TRANSITIONS``.
Use :func:`validate_domain_transition` before persisting a new status.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from sitefleet.errors import InvalidTransitionError


class DomainStatus(str, Enum):
    """DNS/SSL lifecycle of a domain.

    Valid transition graph::

        UNCHECKED   → NS_PENDING
        NS_FAILED   → NS_PENDING                (recheck)
        SSL_FAILED  → NS_PENDING                (recheck)
        NS_PENDING  → NS_ACTIVE | NS_FAILED
        NS_ACTIVE   → SSL_PENDING | SSL_ACTIVE  (valid certificate already present)
        SSL_PENDING → SSL_ACTIVE | SSL_FAILED
        SSL_ACTIVE  → SSL_PENDING               (renewal)
    """

    UNCHECKED = "unchecked"
    NS_PENDING = "ns_pending"
    NS_ACTIVE = "ns_active"
    NS_FAILED = "ns_failed"
    SSL_PENDING = "ssl_pending"
    SSL_ACTIVE = "ssl_active"
    SSL_FAILED = "ssl_failed"

    @property
    def is_failed(self) -> bool:
        return self in (DomainStatus.NS_FAILED, DomainStatus.SSL_FAILED)


DOMAIN_VALID_TRANSITIONS: dict[DomainStatus, frozenset[DomainStatus]] = {
    DomainStatus.UNCHECKED: frozenset({DomainStatus.NS_PENDING}),
    DomainStatus.NS_FAILED: frozenset({DomainStatus.NS_PENDING}),
    DomainStatus.SSL_FAILED: frozenset({DomainStatus.NS_PENDING}),
    DomainStatus.NS_PENDING: frozenset({
        DomainStatus.NS_ACTIVE,
        DomainStatus.NS_FAILED,
    }),
    DomainStatus.NS_ACTIVE: frozenset({
        DomainStatus.SSL_PENDING,
        DomainStatus.SSL_ACTIVE,
    }),
    DomainStatus.SSL_PENDING: frozenset({
        DomainStatus.SSL_ACTIVE,
        DomainStatus.SSL_FAILED,
    }),
    DomainStatus.SSL_ACTIVE: frozenset({DomainStatus.SSL_PENDING}),
}


def validate_domain_transition(current: DomainStatus, target: DomainStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_domain_transition(DomainStatus.NS_PENDING, DomainStatus.NS_ACTIVE)
        >>> validate_domain_transition(DomainStatus.NS_PENDING, DomainStatus.SSL_ACTIVE)
        InvalidTransitionError: Invalid DomainStatus transition: ns_pending -> ssl_active
    """
    allowed = DOMAIN_VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value, "DomainStatus")


class SiteStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    UNPUBLISHED = "unpublished"
    ERROR = "error"


class PostStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    FAILED = "failed"


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class NameserverStatus(str, Enum):
    """Answer of the DNS collaborator for a hostname."""

    ACTIVE = "active"
    PENDING = "pending"
    FAILED = "failed"


# Named autopost frequencies accepted by the admin layer.
AUTOPOST_FREQUENCIES: dict[str, timedelta] = {
    "daily": timedelta(days=1),
    "every_2_days": timedelta(days=2),
    "every_3_days": timedelta(days=3),
    "weekly": timedelta(days=7),
    "biweekly": timedelta(days=14),
}

DEFAULT_POST_TYPE = "article"


def parse_frequency(value: str | int | float | timedelta) -> timedelta:
    """Turn a named frequency, a number of seconds or a timedelta into a timedelta."""
    if isinstance(value, timedelta):
        frequency = value
    elif isinstance(value, (int, float)):
        frequency = timedelta(seconds=value)
    elif value in AUTOPOST_FREQUENCIES:
        frequency = AUTOPOST_FREQUENCIES[value]
    else:
        raise ValueError(f"Unknown autopost frequency: {value!r}")
    if frequency <= timedelta(0):
        raise ValueError("Autopost frequency must be positive")
    return frequency


@dataclass
class Domain:
    id: int
    hostname: str
    status: DomainStatus = DomainStatus.UNCHECKED
    last_checked_at: datetime | None = None
    ssl_expires_at: datetime | None = None
    site_id: int | None = None
    check_attempt: int = 0
    failure_count: int = 0
    error_message: str | None = None

    def has_valid_certificate(self, now: datetime, renewal_window: timedelta) -> bool:
        """True if the certificate does not expire within the renewal window."""
        return self.ssl_expires_at is not None and self.ssl_expires_at - now > renewal_window


@dataclass
class Site:
    id: int
    domain_id: int | None = None
    status: SiteStatus = SiteStatus.DRAFT
    autopost_enabled: bool = False
    autopost_frequency: timedelta = field(default_factory=lambda: timedelta(days=3))
    last_autopost_at: datetime | None = None
    publish_target: str | None = None
    autopost_post_types: list[str] = field(default_factory=lambda: [DEFAULT_POST_TYPE])
    autopost_count: int = 0
    autopost_errors: int = 0
    autopost_last_error: str | None = None

    @property
    def is_publishable(self) -> bool:
        return self.status is SiteStatus.PUBLISHED

    def autopost_due_at(self) -> datetime | None:
        """When the next autopost is due; ``None`` means due immediately."""
        if self.last_autopost_at is None:
            return None
        return self.last_autopost_at + self.autopost_frequency


@dataclass
class Post:
    id: int
    site_id: int
    title: str = ""
    slug: str = ""
    body: str = ""
    post_type: str = DEFAULT_POST_TYPE
    status: PostStatus = PostStatus.DRAFT
    scheduled_at: datetime | None = None
    published_at: datetime | None = None
    error_message: str | None = None


@dataclass
class Server:
    id: int
    name: str
    address: str
    is_active: bool = True
    is_primary: bool = False
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_health_check_at: datetime | None = None
    unreachable_streak: int = 0


@dataclass
class TriggerRun:
    """Run ledger row (``trigger_runs``)."""

    name: str
    running: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None
    owner: str | None = None
    run_count: int = 0

    def is_stale(self, now: datetime, stale_after: timedelta) -> bool:
        """A running entry older than ``stale_after`` is treated as abandoned."""
        return self.running and (self.started_at is None or now - self.started_at >= stale_after)


@dataclass(frozen=True)
class CertificateResult:
    """Answer of the certificate collaborator."""

    active: bool
    expires_at: datetime | None = None
    detail: str | None = None


@dataclass(frozen=True)
class PostDraft:
    """Content produced by the content pipeline for a new post."""

    title: str
    body: str
    slug: str | None = None
