"""Tests for run_sweep and SweepReport."""

import threading

import pytest

from sitefleet.execution import Target, WorkerPool, WorkUnit
from sitefleet.reconcilers import Reconciler, SweepReport, run_sweep


class ListReconciler:
    """Reconciler over plain integers, for driving run_sweep directly."""

    trigger = "numbers"
    kind = "number"

    def __init__(self, items, *, skip=(), bad_plan=(), fail=(), gate=None):
        self.items = list(items)
        self.skip = set(skip)
        self.bad_plan = set(bad_plan)
        self.fail = set(fail)
        self.gate = gate
        self.applied = []
        self._lock = threading.Lock()

    def select_candidates(self, now):
        return self.items

    def plan_unit(self, item, now):
        if item in self.bad_plan:
            raise ValueError(f"cannot plan {item}")
        if item in self.skip:
            return None
        return WorkUnit(trigger=self.trigger, target=Target(self.kind, item), action="square")

    def execute(self, unit):
        if self.gate is not None:
            self.gate.wait(2.0)
        if unit.target.id in self.fail:
            raise RuntimeError(f"no square for {unit.target.id}")
        return unit.target.id ** 2

    def apply_result(self, result):
        with self._lock:
            self.applied.append((result.unit.target.id, result.outcome.value))


class TestRunSweep:
    def test_counts(self, pool, clock):
        reconciler = ListReconciler(range(6), skip={1}, bad_plan={2}, fail={3})

        report = run_sweep(reconciler, pool, clock(), wait_timeout=5.0)

        assert isinstance(reconciler, Reconciler)
        assert report.candidates == 6
        assert report.planned == 4
        assert report.skipped == 1
        assert report.planning_errors == 1
        assert report.succeeded == 3
        assert report.failed == 1
        assert report.complete
        assert sorted(reconciler.applied) == [
            (0, "succeeded"), (3, "failed"), (4, "succeeded"), (5, "succeeded"),
        ]

    def test_selection_error_propagates(self, pool, clock):
        class Broken(ListReconciler):
            def select_candidates(self, now):
                raise ConnectionError("store offline")

        with pytest.raises(ConnectionError):
            run_sweep(Broken([]), pool, clock())

    def test_unfinished_units_counted_as_pending(self, pool, clock):
        gate = threading.Event()
        reconciler = ListReconciler([1, 2], gate=gate)

        report = run_sweep(reconciler, pool, clock(), wait_timeout=0.05)

        assert report.pending == 2
        assert not report.complete
        gate.set()

    def test_saturated_pool_stops_submission(self, clock):
        gate = threading.Event()
        tight = WorkerPool(size=1, unit_timeout=5.0, submit_timeout=0.05, clock=clock)
        reconciler = ListReconciler([1, 2, 3], gate=gate)

        report = run_sweep(reconciler, tight, clock(), wait_timeout=0.05)

        assert report.planned == 1
        assert report.unsubmitted == 2
        gate.set()
        tight.shutdown(wait=True)
        assert reconciler.applied == [(1, "succeeded")]

    def test_report_to_dict(self, clock):
        data = SweepReport(trigger="check-servers", started_at=clock(), candidates=2).to_dict()
        assert data["trigger"] == "check-servers"
        assert data["started_at"] == clock().isoformat()
        assert data["candidates"] == 2
