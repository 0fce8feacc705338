"""Reconcilers: one per periodic trigger, all driven by :func:`run_sweep`."""

from sitefleet.reconcilers.autopost import AutopostPlanner
from sitefleet.reconcilers.base import Reconciler, SweepReport, run_sweep
from sitefleet.reconcilers.domains import DomainStatusReconciler
from sitefleet.reconcilers.posts import ScheduledPostPublisher
from sitefleet.reconcilers.servers import ServerHealthChecker

__all__ = [
    "AutopostPlanner",
    "DomainStatusReconciler",
    "Reconciler",
    "ScheduledPostPublisher",
    "ServerHealthChecker",
    "SweepReport",
    "run_sweep",
]
