"""Scheduled post publisher."""

from __future__ import annotations

from datetime import datetime

from sitefleet.collaborators import Publisher
from sitefleet.errors import InvalidTransitionError
from sitefleet.execution.work import Target, UnitResult, WorkUnit
from sitefleet.logging import get_logger
from sitefleet.models import Post, PostStatus
from sitefleet.store import EntityStore
from sitefleet.timestamps import Clock, utc_now

logger = get_logger(__name__)

PUBLISHED = "published"
ALREADY_HANDLED = "already_handled"


class ScheduledPostPublisher:
    """Publish due posts, oldest ``scheduled_at`` first.

    Posts of sites that are not published are left scheduled and never
    take up room in the batch. A unit re-reads its post before publishing,
    and the status flip to ``published`` is conditional on the post still
    being scheduled, so a duplicate unit can neither publish twice nor
    double-apply.
    """

    trigger = "publish-scheduled-posts"
    kind = "post"

    def __init__(
        self,
        store: EntityStore,
        publisher: Publisher,
        *,
        batch_limit: int = 100,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.batch_limit = batch_limit
        self._clock = clock

    def select_candidates(self, now: datetime) -> list[Post]:
        return self.store.due_posts(now, limit=self.batch_limit)

    def plan_unit(self, post: Post, now: datetime) -> WorkUnit:
        return WorkUnit(
            trigger=self.trigger,
            target=Target(self.kind, post.id),
            action="publish",
            payload={"site_id": post.site_id, "slug": post.slug},
        )

    def execute(self, unit: WorkUnit) -> str:
        post = self.store.get_post(unit.target.id)
        if post.status is not PostStatus.SCHEDULED:
            return ALREADY_HANDLED
        site = self.store.get_site(post.site_id)
        self.publisher.publish(post, site)
        return PUBLISHED

    def apply_result(self, result: UnitResult) -> None:
        post_id = result.unit.target.id
        if result.ok:
            if result.value != PUBLISHED:
                logger.debug("post_already_handled", post_id=post_id)
            elif self.store.mark_post_published(post_id, self._clock()):
                logger.info("post_published", post_id=post_id)
            else:
                logger.info("post_publish_result_discarded", post_id=post_id)
            return

        if self.store.mark_post_failed(post_id, result.error_message or "publish failed"):
            logger.warning("post_publish_failed", post_id=post_id, error=result.error_message)

    def reschedule_post(self, post_id: int, at: datetime) -> Post:
        return reschedule_post(self.store, post_id, at)


def reschedule_post(store: EntityStore, post_id: int, at: datetime) -> Post:
    """Explicitly put a failed or draft post back on the schedule."""
    if not store.reschedule_post(post_id, at):
        current = store.get_post(post_id)
        raise InvalidTransitionError(current.status.value, PostStatus.SCHEDULED.value, "PostStatus")
    logger.info("post_rescheduled", post_id=post_id, scheduled_at=at.isoformat())
    return store.get_post(post_id)
