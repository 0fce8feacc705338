"""Tests for RunLedger single-flight."""

import threading
from datetime import timedelta

from sitefleet.scheduling import RunLedger

STALE = timedelta(minutes=15)


class TestRunLedger:
    """Check-and-set on trigger_runs."""

    def test_first_start_wins(self, ledger, clock):
        owner = ledger.try_start("check-domains", clock(), STALE)
        assert owner is not None
        assert owner.startswith("test-instance:")

        entry = ledger.get("check-domains")
        assert entry.running is True
        assert entry.started_at == clock()
        assert entry.owner == owner
        assert entry.run_count == 1

    def test_second_start_loses_while_running(self, ledger, clock):
        assert ledger.try_start("check-domains", clock(), STALE)
        clock.advance(minutes=5)
        assert ledger.try_start("check-domains", clock(), STALE) is None

    def test_finish_then_start_again(self, ledger, clock):
        owner = ledger.try_start("check-servers", clock(), STALE)
        clock.advance(seconds=30)
        assert ledger.finish("check-servers", owner, clock())

        entry = ledger.get("check-servers")
        assert entry.running is False
        assert entry.finished_at == clock()
        assert entry.last_error is None

        assert ledger.try_start("check-servers", clock(), STALE)
        assert ledger.get("check-servers").run_count == 2

    def test_finish_records_error(self, ledger, clock):
        owner = ledger.try_start("plan-autoposts", clock(), STALE)
        ledger.finish("plan-autoposts", owner, clock(), error="StoreError: disk full")
        assert ledger.get("plan-autoposts").last_error == "StoreError: disk full"

    def test_stale_entry_is_reclaimed(self, ledger, clock):
        crashed = ledger.try_start("check-domains", clock(), STALE)
        clock.advance(minutes=15)
        reclaimed = ledger.try_start("check-domains", clock(), STALE)

        assert reclaimed is not None
        assert reclaimed != crashed
        # the crashed run finishing late must not release the new run
        assert ledger.finish("check-domains", crashed, clock()) is False
        assert ledger.get("check-domains").running is True
        assert ledger.finish("check-domains", reclaimed, clock()) is True

    def test_contention_between_instances(self, db, clock):
        ledgers = [RunLedger(db, instance_id=f"scheduler-{i}") for i in range(8)]
        barrier = threading.Barrier(len(ledgers))
        owners = []
        lock = threading.Lock()

        def contend(ledger):
            barrier.wait()
            owner = ledger.try_start("publish-scheduled-posts", clock(), STALE)
            with lock:
                owners.append(owner)

        threads = [threading.Thread(target=contend, args=(lg,)) for lg in ledgers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [o for o in owners if o is not None]
        assert len(winners) == 1
        assert ledgers[0].get("publish-scheduled-posts").owner == winners[0]

    def test_entries_and_prune(self, ledger, clock):
        for name in ("old-trigger", "check-servers"):
            owner = ledger.try_start(name, clock(), STALE)
            ledger.finish(name, owner, clock())
        clock.advance(days=40)

        removed = ledger.prune(clock() - timedelta(days=30), keep=["check-servers"])

        assert removed == 1
        assert [e.name for e in ledger.entries()] == ["check-servers"]

    def test_prune_keeps_running_entries(self, ledger, clock):
        ledger.try_start("orphan", clock(), STALE)
        clock.advance(days=40)
        assert ledger.prune(clock() - timedelta(days=30)) == 0
