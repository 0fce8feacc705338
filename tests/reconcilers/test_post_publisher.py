"""Tests for ScheduledPostPublisher and DirectoryPublisher."""

from datetime import timedelta

import pytest

from sitefleet.collaborators import DirectoryPublisher, render_post
from sitefleet.errors import InvalidTransitionError
from sitefleet.execution import WorkerPool
from sitefleet.models import PostStatus, SiteStatus
from sitefleet.reconcilers import ScheduledPostPublisher, run_sweep


@pytest.fixture
def reconciler(store, publisher, clock):
    return ScheduledPostPublisher(store, publisher, clock=clock)


@pytest.fixture
def site(store):
    domain = store.add_domain("blog.test")
    return store.add_site(domain_id=domain.id, status=SiteStatus.PUBLISHED)


def schedule(store, site, title, at):
    return store.add_post(site.id, title=title, body="Body.", status=PostStatus.SCHEDULED,
                          scheduled_at=at)


class TestPublishing:
    def test_due_posts_published_in_schedule_order(self, store, publisher, clock, site):
        now = clock()
        p2 = schedule(store, site, "second", now - timedelta(minutes=5))
        p1 = schedule(store, site, "first", now - timedelta(minutes=10))
        future = schedule(store, site, "future", now + timedelta(minutes=5))
        serial = WorkerPool(size=1, unit_timeout=5.0, clock=clock)
        reconciler = ScheduledPostPublisher(store, publisher, clock=clock)

        report = run_sweep(reconciler, serial, now, wait_timeout=5.0)
        serial.shutdown(wait=True)

        assert report.succeeded == 2
        assert publisher.order == [p1.id, p2.id]
        for post in (p1, p2):
            loaded = store.get_post(post.id)
            assert loaded.status is PostStatus.PUBLISHED
            assert loaded.published_at == now
        assert store.get_post(future.id).status is PostStatus.SCHEDULED

    def test_posts_of_unpublished_site_left_alone(self, store, reconciler, pool, clock):
        draft_site = store.add_site(status=SiteStatus.DRAFT)
        post = schedule(store, draft_site, "waiting", clock() - timedelta(minutes=1))

        report = run_sweep(reconciler, pool, clock(), wait_timeout=5.0)

        assert report.candidates == 0
        assert store.get_post(post.id).status is PostStatus.SCHEDULED

    def test_unpublished_backlog_does_not_starve_live_site(self, store, publisher, pool, clock, site):
        draft_site = store.add_site(status=SiteStatus.DRAFT)
        held = [schedule(store, draft_site, f"held {n}", clock() - timedelta(hours=2))
                for n in range(2)]
        live = schedule(store, site, "live", clock() - timedelta(minutes=1))
        reconciler = ScheduledPostPublisher(store, publisher, batch_limit=2, clock=clock)

        report = run_sweep(reconciler, pool, clock(), wait_timeout=5.0)

        assert report.candidates == 1
        assert store.get_post(live.id).status is PostStatus.PUBLISHED
        assert all(store.get_post(p.id).status is PostStatus.SCHEDULED for p in held)
        assert publisher.order == [live.id]

    def test_duplicate_units_publish_once(self, store, reconciler, publisher, pool, clock, site):
        post = schedule(store, site, "dup", clock())
        units = [reconciler.plan_unit(post, clock()) for _ in range(2)]

        handles = [pool.submit(u, reconciler.execute, reconciler.apply_result) for u in units]
        for handle in handles:
            assert handle.wait(2.0).ok

        assert len(publisher.artifacts) == 1
        assert 1 <= publisher.calls[post.id] <= 2
        assert store.get_post(post.id).status is PostStatus.PUBLISHED

    def test_already_published_post_not_republished(self, store, reconciler, publisher, pool, clock, site):
        post = schedule(store, site, "done", clock())
        unit = reconciler.plan_unit(post, clock())
        store.mark_post_published(post.id, clock())

        result = pool.submit(unit, reconciler.execute, reconciler.apply_result).wait(2.0)

        assert result.value == "already_handled"
        assert publisher.calls[post.id] == 0

    def test_failure_marks_post_failed_without_retry(self, store, reconciler, publisher, pool, clock, site):
        post = schedule(store, site, "rejected", clock())
        publisher.fail_for.add(post.id)

        report = run_sweep(reconciler, pool, clock(), wait_timeout=5.0)
        assert report.failed == 1
        loaded = store.get_post(post.id)
        assert loaded.status is PostStatus.FAILED
        assert "rejected post" in loaded.error_message

        clock.advance(minutes=1)
        assert run_sweep(reconciler, pool, clock(), wait_timeout=5.0).candidates == 0
        assert publisher.calls[post.id] == 1


class TestReschedule:
    def test_failed_post_can_be_rescheduled(self, store, reconciler, publisher, pool, clock, site):
        post = schedule(store, site, "retry me", clock())
        store.mark_post_failed(post.id, "target offline")

        rescheduled = reconciler.reschedule_post(post.id, clock() + timedelta(minutes=1))
        assert rescheduled.status is PostStatus.SCHEDULED

        clock.advance(minutes=1)
        run_sweep(reconciler, pool, clock(), wait_timeout=5.0)
        assert store.get_post(post.id).status is PostStatus.PUBLISHED

    def test_published_post_cannot_be_rescheduled(self, store, reconciler, clock, site):
        post = schedule(store, site, "live", clock())
        store.mark_post_published(post.id, clock())

        with pytest.raises(InvalidTransitionError) as exc_info:
            reconciler.reschedule_post(post.id, clock())
        assert exc_info.value.current == "published"


class TestDirectoryPublisher:
    def test_publishing_twice_leaves_one_file(self, store, tmp_path, clock, site):
        post = schedule(store, site, "Hello World", clock())
        target = DirectoryPublisher(tmp_path / "public", hostname_for=store.site_hostname)

        target.publish(post, site)
        target.publish(post, site)

        path = tmp_path / "public" / "blog.test" / "posts" / "hello-world.html"
        assert path.read_text(encoding="utf-8") == render_post(post)
        assert [p.name for p in path.parent.iterdir()] == ["hello-world.html"]

    def test_site_directory_fallbacks(self, store, tmp_path, clock):
        named = store.add_site(status=SiteStatus.PUBLISHED, publish_target="campaign")
        anonymous = store.add_site(status=SiteStatus.PUBLISHED)
        target = DirectoryPublisher(tmp_path)

        post = schedule(store, named, "A", clock())
        assert target.path_for(post, named) == tmp_path / "campaign" / "posts" / "a.html"
        assert target.path_for(post, anonymous).parent.parent.name == f"site-{anonymous.id}"

    def test_render_escapes_markup(self, store, clock, site):
        post = store.add_post(site.id, title="<b>Bold</b>", body="one\n\ntwo & three")
        page = render_post(post)
        assert "&lt;b&gt;Bold&lt;/b&gt;" in page
        assert "<p>one</p>" in page
        assert "<p>two &amp; three</p>" in page
