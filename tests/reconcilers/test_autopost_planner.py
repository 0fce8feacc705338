"""Tests for AutopostPlanner."""

import random
from datetime import timedelta

import pytest

from sitefleet.errors import StoreError
from sitefleet.execution import WorkerPool
from sitefleet.models import PostStatus, SiteStatus
from sitefleet.reconcilers import AutopostPlanner, run_sweep

DAILY = timedelta(hours=24)


@pytest.fixture
def planner(store, content):
    return AutopostPlanner(store, content, rng=random.Random(7))


def autopost_site(store, last, *, status=SiteStatus.PUBLISHED, types=None):
    return store.add_site(
        status=status,
        autopost_enabled=True,
        autopost_frequency=DAILY,
        last_autopost_at=last,
        autopost_post_types=types,
    )


class TestAutopostPlanner:
    """One scheduled post per due site, never two."""

    def test_due_site_gets_exactly_one_post(self, store, planner, pool, clock):
        now = clock()
        site = autopost_site(store, now - timedelta(hours=25))

        report = run_sweep(planner, pool, now, wait_timeout=5.0)

        assert report.succeeded == 1
        posts = store.posts_for_site(site.id)
        assert len(posts) == 1
        assert posts[0].status is PostStatus.SCHEDULED
        assert posts[0].scheduled_at == now
        loaded = store.get_site(site.id)
        assert loaded.last_autopost_at == now
        assert loaded.autopost_count == 1

        clock.advance(minutes=10)
        assert run_sweep(planner, pool, clock(), wait_timeout=5.0).candidates == 0
        assert len(store.posts_for_site(site.id)) == 1

    def test_never_posted_site_is_due(self, store, planner, pool, clock):
        site = autopost_site(store, None)
        run_sweep(planner, pool, clock(), wait_timeout=5.0)
        assert len(store.posts_for_site(site.id)) == 1

    def test_site_within_frequency_not_due(self, store, planner, pool, clock, content):
        autopost_site(store, clock() - timedelta(hours=23))
        assert run_sweep(planner, pool, clock(), wait_timeout=5.0).candidates == 0
        assert content.calls == []

    def test_unpublished_site_skipped(self, store, planner, pool, clock, content):
        autopost_site(store, None, status=SiteStatus.DRAFT)
        assert run_sweep(planner, pool, clock(), wait_timeout=5.0).candidates == 0
        assert content.calls == []

    def test_content_failure_keeps_site_due(self, store, planner, pool, clock, content):
        last = clock() - timedelta(hours=25)
        site = autopost_site(store, last)
        content.fail_with = RuntimeError("content pipeline down")

        report = run_sweep(planner, pool, clock(), wait_timeout=5.0)

        assert report.failed == 1
        loaded = store.get_site(site.id)
        assert loaded.last_autopost_at == last
        assert loaded.autopost_errors == 1
        assert loaded.autopost_last_error == "content pipeline down"
        assert store.posts_for_site(site.id) == []

        content.fail_with = None
        clock.advance(minutes=10)
        run_sweep(planner, pool, clock(), wait_timeout=5.0)
        loaded = store.get_site(site.id)
        assert loaded.last_autopost_at == clock()
        assert loaded.autopost_last_error is None
        assert len(store.posts_for_site(site.id)) == 1

    def test_duplicate_units_create_one_post(self, store, planner, pool, clock):
        site = autopost_site(store, None)
        candidate = store.get_site(site.id)
        units = [planner.plan_unit(candidate, clock()) for _ in range(2)]

        results = [pool.submit(u, planner.execute, planner.apply_result).wait(2.0) for u in units]

        assert all(r.ok for r in results)
        assert sorted(r.value is None for r in results) == [False, True]
        assert len(store.posts_for_site(site.id)) == 1
        assert store.get_site(site.id).autopost_count == 1

    def test_post_type_drawn_from_site_list(self, store, planner, pool, clock, content):
        site = autopost_site(store, None, types=["review", "listicle"])
        run_sweep(planner, pool, clock(), wait_timeout=5.0)

        [post] = store.posts_for_site(site.id)
        assert post.post_type in {"review", "listicle"}
        assert content.calls == [(site.id, post.post_type)]


class TestAutopostOutcomes:
    """Only a reported success claims the slot and inserts the post."""

    def test_timed_out_draft_leaves_site_due(self, store, clock, content):
        last = clock() - timedelta(hours=25)
        site = autopost_site(store, last)
        content.delay = 0.3
        slow_pool = WorkerPool(size=2, unit_timeout=0.05, clock=clock)
        slow_planner = AutopostPlanner(store, content, rng=random.Random(7))

        report = run_sweep(slow_planner, slow_pool, clock(), wait_timeout=2.0)
        slow_pool.shutdown(wait=True)

        assert report.timed_out == 1
        loaded = store.get_site(site.id)
        assert loaded.last_autopost_at == last
        assert loaded.autopost_count == 0
        assert loaded.autopost_errors == 1
        assert store.posts_for_site(site.id) == []

    def test_insert_failure_keeps_slot_unclaimed(self, store, planner, pool, clock, monkeypatch):
        last = clock() - timedelta(hours=25)
        site = autopost_site(store, last)

        def rejected(*args, **kwargs):
            raise StoreError("posts table locked")

        monkeypatch.setattr(store, "add_post", rejected)
        run_sweep(planner, pool, clock(), wait_timeout=5.0)

        loaded = store.get_site(site.id)
        assert loaded.last_autopost_at == last
        assert loaded.autopost_count == 0
        assert loaded.autopost_errors == 1
        assert "posts table locked" in loaded.autopost_last_error
        assert store.posts_for_site(site.id) == []
        assert pool.stats()["callback_errors"] == 1

        monkeypatch.undo()
        clock.advance(minutes=10)
        run_sweep(planner, pool, clock(), wait_timeout=5.0)
        assert store.get_site(site.id).last_autopost_at == clock()
        assert len(store.posts_for_site(site.id)) == 1
