"""Entity store: load-by-filter and conditional single-entity updates.

Every write the reconcilers make goes through a conditional ``UPDATE``
(compare-and-swap on the field the writer expects to find), so a duplicate
or stale work unit can never apply its result twice or out of order.

Field ownership::

    domains.status / check_* / ssl_expires_at   ← DomainStatusReconciler
    posts.status / published_at / error_message ← ScheduledPostPublisher
    sites.last_autopost_at / autopost_*         ← AutopostPlanner
    servers.health_status / last_health_check_* ← ServerHealthChecker
"""

from __future__ import annotations

import json
import re
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from sitefleet.db import Database
from sitefleet.errors import EntityNotFoundError
from sitefleet.models import (
    DEFAULT_POST_TYPE,
    Domain,
    DomainStatus,
    HealthStatus,
    Post,
    PostDraft,
    PostStatus,
    Server,
    Site,
    SiteStatus,
)
from sitefleet.timestamps import from_iso8601, to_iso8601

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    """Lowercase, hyphen-separated slug suitable for a file name."""
    slug = _SLUG_RE.sub("-", text.lower()).strip("-")
    return slug or "post"


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso8601(value)
    if isinstance(value, timedelta):
        return int(value.total_seconds())
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, list):
        return json.dumps(value)
    return value


def _domain_from_row(row: sqlite3.Row) -> Domain:
    return Domain(
        id=row["id"],
        hostname=row["hostname"],
        status=DomainStatus(row["status"]),
        last_checked_at=from_iso8601(row["last_checked_at"]),
        ssl_expires_at=from_iso8601(row["ssl_expires_at"]),
        site_id=row["site_id"],
        check_attempt=row["check_attempt"],
        failure_count=row["failure_count"],
        error_message=row["error_message"],
    )


def _site_from_row(row: sqlite3.Row) -> Site:
    return Site(
        id=row["id"],
        domain_id=row["domain_id"],
        status=SiteStatus(row["status"]),
        autopost_enabled=bool(row["autopost_enabled"]),
        autopost_frequency=timedelta(seconds=row["autopost_frequency_seconds"]),
        last_autopost_at=from_iso8601(row["last_autopost_at"]),
        publish_target=row["publish_target"],
        autopost_post_types=json.loads(row["autopost_post_types"] or "[]") or [DEFAULT_POST_TYPE],
        autopost_count=row["autopost_count"],
        autopost_errors=row["autopost_errors"],
        autopost_last_error=row["autopost_last_error"],
    )


def _post_from_row(row: sqlite3.Row) -> Post:
    return Post(
        id=row["id"],
        site_id=row["site_id"],
        title=row["title"],
        slug=row["slug"],
        body=row["body"],
        post_type=row["post_type"],
        status=PostStatus(row["status"]),
        scheduled_at=from_iso8601(row["scheduled_at"]),
        published_at=from_iso8601(row["published_at"]),
        error_message=row["error_message"],
    )


def _server_from_row(row: sqlite3.Row) -> Server:
    return Server(
        id=row["id"],
        name=row["name"],
        address=row["address"],
        is_active=bool(row["is_active"]),
        is_primary=bool(row["is_primary"]),
        health_status=HealthStatus(row["health_status"]),
        last_health_check_at=from_iso8601(row["last_health_check_at"]),
        unreachable_streak=row["unreachable_streak"],
    )


class EntityStore:
    """Typed access to domains, sites, posts and servers.

    Example:
        >>> store = EntityStore(Database.open(":memory:"))
        >>> domain = store.add_domain("example.com")
        >>> domain.status
        <DomainStatus.UNCHECKED: 'unchecked'>
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # === Domains ===

    def add_domain(
        self,
        hostname: str,
        *,
        site_id: int | None = None,
        status: DomainStatus = DomainStatus.UNCHECKED,
        ssl_expires_at: datetime | None = None,
    ) -> Domain:
        domain_id = self.db.insert(
            "INSERT INTO domains (hostname, site_id, status, ssl_expires_at) VALUES (?, ?, ?, ?)",
            (hostname, site_id, status.value, to_iso8601(ssl_expires_at)),
        )
        return self.get_domain(domain_id)

    def get_domain(self, domain_id: int) -> Domain:
        row = self.db.query_one("SELECT * FROM domains WHERE id = ?", (domain_id,))
        if row is None:
            raise EntityNotFoundError("Domain", domain_id)
        return _domain_from_row(row)

    def list_domains(self) -> list[Domain]:
        return [_domain_from_row(r) for r in self.db.query("SELECT * FROM domains ORDER BY id")]

    def domains_needing_check(
        self,
        now: datetime,
        *,
        renewal_window: timedelta,
        max_auto_rechecks: int,
        limit: int,
    ) -> list[Domain]:
        """Domains a sweep should look at, least recently checked first.

        Includes every non-stable status, failed domains that still have
        automatic rechecks left, and active certificates inside the renewal
        window (or with an unknown expiry).
        """
        renew_before = to_iso8601(now + renewal_window)
        rows = self.db.query(
            """
            SELECT * FROM domains
            WHERE status IN (?, ?, ?, ?)
               OR (status IN (?, ?) AND failure_count < ?)
               OR (status = ? AND (ssl_expires_at IS NULL OR ssl_expires_at <= ?))
            ORDER BY last_checked_at IS NOT NULL, last_checked_at ASC, id ASC
            LIMIT ?
            """,
            (
                DomainStatus.UNCHECKED.value,
                DomainStatus.NS_PENDING.value,
                DomainStatus.NS_ACTIVE.value,
                DomainStatus.SSL_PENDING.value,
                DomainStatus.NS_FAILED.value,
                DomainStatus.SSL_FAILED.value,
                max_auto_rechecks,
                DomainStatus.SSL_ACTIVE.value,
                renew_before,
                limit,
            ),
        )
        return [_domain_from_row(r) for r in rows]

    def update_domain(
        self,
        domain_id: int,
        *,
        expect_status: DomainStatus,
        expect_attempt: int,
        bump_attempt: bool = False,
        **fields: Any,
    ) -> bool:
        """Conditionally update a domain; False if status or attempt moved on."""
        assignments = [f"{name} = ?" for name in fields]
        params = [_db_value(v) for v in fields.values()]
        if bump_attempt:
            assignments.append("check_attempt = check_attempt + 1")
        if not assignments:
            return False
        rowcount = self.db.execute(
            f"UPDATE domains SET {', '.join(assignments)} "
            "WHERE id = ? AND status = ? AND check_attempt = ?",
            (*params, domain_id, expect_status.value, expect_attempt),
        )
        return rowcount == 1

    def reset_domain_for_recheck(self, domain_id: int) -> Domain:
        """Explicit recheck: the only path that resets a domain's status."""
        rowcount = self.db.execute(
            """
            UPDATE domains
            SET status = ?, check_attempt = check_attempt + 1,
                failure_count = 0, error_message = NULL
            WHERE id = ?
            """,
            (DomainStatus.NS_PENDING.value, domain_id),
        )
        if rowcount == 0:
            raise EntityNotFoundError("Domain", domain_id)
        return self.get_domain(domain_id)

    # === Sites ===

    def add_site(
        self,
        *,
        domain_id: int | None = None,
        status: SiteStatus = SiteStatus.DRAFT,
        autopost_enabled: bool = False,
        autopost_frequency: timedelta = timedelta(days=3),
        last_autopost_at: datetime | None = None,
        publish_target: str | None = None,
        autopost_post_types: list[str] | None = None,
    ) -> Site:
        site_id = self.db.insert(
            """
            INSERT INTO sites (domain_id, status, autopost_enabled, autopost_frequency_seconds,
                               last_autopost_at, publish_target, autopost_post_types)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                domain_id,
                status.value,
                int(autopost_enabled),
                int(autopost_frequency.total_seconds()),
                to_iso8601(last_autopost_at),
                publish_target,
                json.dumps(autopost_post_types or [DEFAULT_POST_TYPE]),
            ),
        )
        if domain_id is not None:
            self.db.execute("UPDATE domains SET site_id = ? WHERE id = ?", (site_id, domain_id))
        return self.get_site(site_id)

    def get_site(self, site_id: int) -> Site:
        row = self.db.query_one("SELECT * FROM sites WHERE id = ?", (site_id,))
        if row is None:
            raise EntityNotFoundError("Site", site_id)
        return _site_from_row(row)

    def site_hostname(self, site: Site) -> str | None:
        if site.domain_id is None:
            return None
        row = self.db.query_one("SELECT hostname FROM domains WHERE id = ?", (site.domain_id,))
        return row["hostname"] if row else None

    def update_site(self, site_id: int, **fields: Any) -> None:
        """Admin-side site changes (publishing state, autopost settings)."""
        if "autopost_frequency" in fields:
            fields["autopost_frequency_seconds"] = fields.pop("autopost_frequency")
        assignments = ", ".join(f"{name} = ?" for name in fields)
        rowcount = self.db.execute(
            f"UPDATE sites SET {assignments} WHERE id = ?",
            (*(_db_value(v) for v in fields.values()), site_id),
        )
        if rowcount == 0:
            raise EntityNotFoundError("Site", site_id)

    def autopost_sites(self) -> list[Site]:
        rows = self.db.query(
            "SELECT * FROM sites WHERE autopost_enabled = 1 "
            "ORDER BY last_autopost_at IS NOT NULL, last_autopost_at ASC, id ASC"
        )
        return [_site_from_row(r) for r in rows]

    def record_autopost_success(
        self, site_id: int, *, previous: datetime | None, now: datetime
    ) -> bool:
        """Advance ``last_autopost_at`` only if nobody advanced it meanwhile."""
        rowcount = self.db.execute(
            """
            UPDATE sites
            SET last_autopost_at = ?, autopost_count = autopost_count + 1,
                autopost_last_error = NULL
            WHERE id = ? AND last_autopost_at IS ?
            """,
            (to_iso8601(now), site_id, to_iso8601(previous)),
        )
        return rowcount == 1

    def create_autopost(
        self,
        site_id: int,
        draft: PostDraft,
        *,
        post_type: str,
        previous: datetime | None,
        now: datetime,
    ) -> Post | None:
        """Advance ``last_autopost_at`` and insert the scheduled post atomically.

        Returns None, writing nothing, if ``last_autopost_at`` is no longer
        *previous*.
        """
        with self.db.transaction():
            if not self.record_autopost_success(site_id, previous=previous, now=now):
                return None
            return self.add_post(
                site_id,
                title=draft.title,
                body=draft.body,
                slug=draft.slug,
                post_type=post_type,
                status=PostStatus.SCHEDULED,
                scheduled_at=now,
            )

    def record_autopost_failure(self, site_id: int, error: str) -> None:
        self.db.execute(
            """
            UPDATE sites
            SET autopost_errors = autopost_errors + 1, autopost_last_error = ?
            WHERE id = ?
            """,
            (error, site_id),
        )

    def reset_autopost_counters(self) -> int:
        """Daily reset of the autopost error counters."""
        return self.db.execute("UPDATE sites SET autopost_errors = 0 WHERE autopost_errors > 0")

    # === Posts ===

    def add_post(
        self,
        site_id: int,
        *,
        title: str,
        body: str = "",
        slug: str | None = None,
        post_type: str = DEFAULT_POST_TYPE,
        status: PostStatus = PostStatus.DRAFT,
        scheduled_at: datetime | None = None,
    ) -> Post:
        post_id = self.db.insert(
            """
            INSERT INTO posts (site_id, title, slug, body, post_type, status, scheduled_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                site_id,
                title,
                slug or slugify(title),
                body,
                post_type,
                status.value,
                to_iso8601(scheduled_at),
            ),
        )
        return self.get_post(post_id)

    def get_post(self, post_id: int) -> Post:
        row = self.db.query_one("SELECT * FROM posts WHERE id = ?", (post_id,))
        if row is None:
            raise EntityNotFoundError("Post", post_id)
        return _post_from_row(row)

    def posts_for_site(self, site_id: int) -> list[Post]:
        rows = self.db.query("SELECT * FROM posts WHERE site_id = ? ORDER BY id", (site_id,))
        return [_post_from_row(r) for r in rows]

    def due_posts(self, now: datetime, *, limit: int) -> list[Post]:
        """Scheduled posts of published sites whose time has come, oldest due first.

        Posts of sites that are not published stay scheduled and do not
        count against *limit*.
        """
        rows = self.db.query(
            """
            SELECT posts.* FROM posts
            JOIN sites ON sites.id = posts.site_id AND sites.status = ?
            WHERE posts.status = ? AND posts.scheduled_at IS NOT NULL
              AND posts.scheduled_at <= ?
            ORDER BY posts.scheduled_at ASC, posts.id ASC
            LIMIT ?
            """,
            (SiteStatus.PUBLISHED.value, PostStatus.SCHEDULED.value, to_iso8601(now), limit),
        )
        return [_post_from_row(r) for r in rows]

    def mark_post_published(self, post_id: int, now: datetime) -> bool:
        rowcount = self.db.execute(
            """
            UPDATE posts SET status = ?, published_at = ?, error_message = NULL
            WHERE id = ? AND status = ?
            """,
            (PostStatus.PUBLISHED.value, to_iso8601(now), post_id, PostStatus.SCHEDULED.value),
        )
        return rowcount == 1

    def mark_post_failed(self, post_id: int, error: str) -> bool:
        rowcount = self.db.execute(
            "UPDATE posts SET status = ?, error_message = ? WHERE id = ? AND status = ?",
            (PostStatus.FAILED.value, error, post_id, PostStatus.SCHEDULED.value),
        )
        return rowcount == 1

    def reschedule_post(self, post_id: int, at: datetime) -> bool:
        """Explicit reschedule of a failed or draft post."""
        rowcount = self.db.execute(
            """
            UPDATE posts SET status = ?, scheduled_at = ?, error_message = NULL
            WHERE id = ? AND status IN (?, ?)
            """,
            (
                PostStatus.SCHEDULED.value,
                to_iso8601(at),
                post_id,
                PostStatus.FAILED.value,
                PostStatus.DRAFT.value,
            ),
        )
        return rowcount == 1

    # === Servers ===

    def add_server(
        self,
        name: str,
        address: str,
        *,
        is_active: bool = True,
        is_primary: bool = False,
    ) -> Server:
        server_id = self.db.insert(
            "INSERT INTO servers (name, address, is_active, is_primary) VALUES (?, ?, ?, ?)",
            (name, address, int(is_active), int(is_primary)),
        )
        return self.get_server(server_id)

    def get_server(self, server_id: int) -> Server:
        row = self.db.query_one("SELECT * FROM servers WHERE id = ?", (server_id,))
        if row is None:
            raise EntityNotFoundError("Server", server_id)
        return _server_from_row(row)

    def active_servers(self) -> list[Server]:
        rows = self.db.query("SELECT * FROM servers WHERE is_active = 1 ORDER BY id")
        return [_server_from_row(r) for r in rows]

    def record_server_health(
        self, server_id: int, status: HealthStatus, checked_at: datetime
    ) -> None:
        self.db.execute(
            """
            UPDATE servers
            SET health_status = ?, last_health_check_at = ?,
                unreachable_streak = CASE WHEN ? = ? THEN unreachable_streak + 1 ELSE 0 END
            WHERE id = ?
            """,
            (
                status.value,
                to_iso8601(checked_at),
                status.value,
                HealthStatus.UNREACHABLE.value,
                server_id,
            ),
        )
