"""Autopost planner: one new scheduled post per due site.

A site is due when it has never autoposted, or when its frequency has
elapsed since ``last_autopost_at``. The unit only drafts content (the slow
part). When the pool reports it succeeded, the result is applied in one
transaction: ``last_autopost_at`` advances conditionally on the value seen
at planning time, and the scheduled post is inserted. A unit that never
commits that transaction leaves ``last_autopost_at`` alone so the next sweep
retries.
"""

from __future__ import annotations

import random
from datetime import datetime

from sitefleet.collaborators import ContentSource
from sitefleet.execution.work import Target, UnitResult, WorkUnit
from sitefleet.logging import get_logger
from sitefleet.models import DEFAULT_POST_TYPE, PostDraft, Site
from sitefleet.store import EntityStore
from sitefleet.timestamps import from_iso8601, to_iso8601

logger = get_logger(__name__)


class AutopostPlanner:
    trigger = "plan-autoposts"
    kind = "site"

    def __init__(
        self,
        store: EntityStore,
        content: ContentSource,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.content = content
        self._rng = rng or random.Random()

    def select_candidates(self, now: datetime) -> list[Site]:
        due: list[Site] = []
        for site in self.store.autopost_sites():
            due_at = site.autopost_due_at()
            if due_at is not None and now < due_at:
                continue
            if not site.is_publishable:
                logger.debug("autopost_site_not_publishable", site_id=site.id)
                continue
            due.append(site)
        return due

    def plan_unit(self, site: Site, now: datetime) -> WorkUnit:
        post_type = self._rng.choice(site.autopost_post_types or [DEFAULT_POST_TYPE])
        return WorkUnit(
            trigger=self.trigger,
            target=Target(self.kind, site.id),
            action="autopost",
            payload={
                "post_type": post_type,
                "previous": to_iso8601(site.last_autopost_at),
                "now": to_iso8601(now),
            },
        )

    def execute(self, unit: WorkUnit) -> PostDraft | None:
        """Draft the post; None if another run already posted for this slot.

        Nothing is written here. The claim and the insert happen in
        :meth:`apply_result`, which only ever sees the result the pool
        reported, so a unit that timed out cannot post late.
        """
        site = self.store.get_site(unit.target.id)
        if site.last_autopost_at != from_iso8601(unit.payload["previous"]):
            return None
        return self.content.draft_post(site, unit.payload["post_type"])

    def apply_result(self, result: UnitResult) -> None:
        unit = result.unit
        site_id = unit.target.id
        if not result.ok:
            self._record_failure(site_id, result.error_message or "autopost failed")
            return
        if result.value is None:
            logger.debug("autopost_already_done", site_id=site_id)
            return

        try:
            post = self.store.create_autopost(
                site_id,
                result.value,
                post_type=unit.payload["post_type"],
                previous=from_iso8601(unit.payload["previous"]),
                now=from_iso8601(unit.payload["now"]),
            )
        except Exception as exc:
            self._record_failure(site_id, f"{type(exc).__name__}: {exc}")
            raise

        if post is None:
            logger.debug("autopost_already_done", site_id=site_id)
        else:
            logger.info("autopost_created", site_id=site_id, post_id=post.id,
                        post_type=post.post_type)

    def _record_failure(self, site_id: int, error: str) -> None:
        self.store.record_autopost_failure(site_id, error)
        logger.warning("autopost_failed", site_id=site_id, error=error)
