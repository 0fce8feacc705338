"""Wiring: settings → store, ledger, pool, reconcilers and scheduler.

Manifesto:
    Everything the reconciliation core needs is assembled in one place so
    the CLI, tests and embedding applications build the same fleet. The
    trigger table is static: names and intervals come from settings, and
    each name routes to one reconciler sweep or one housekeeping callable.

Trigger table::

    publish-scheduled-posts   60s     ScheduledPostPublisher
    plan-autoposts            300s    AutopostPlanner          (needs content)
    check-domains             300s    DomainStatusReconciler   (needs dns + certificates)
    check-servers             600s    ServerHealthChecker
    prune-trigger-history     daily   RunLedger.prune
    reset-daily-counters      daily   EntityStore.reset_autopost_counters

Tags:
    runtime, wiring, trigger-table, housekeeping, sitefleet
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sitefleet.collaborators import Collaborators, DirectoryPublisher, HttpProber
from sitefleet.db import Database
from sitefleet.errors import ConfigError
from sitefleet.execution.pool import WorkerPool
from sitefleet.logging import get_logger
from sitefleet.reconcilers.autopost import AutopostPlanner
from sitefleet.reconcilers.base import Reconciler, SweepReport, run_sweep
from sitefleet.reconcilers.domains import DomainStatusReconciler
from sitefleet.reconcilers.posts import ScheduledPostPublisher
from sitefleet.reconcilers.servers import ServerHealthChecker
from sitefleet.scheduling.backend import TickBackend
from sitefleet.scheduling.ledger import RunLedger
from sitefleet.scheduling.scheduler import TriggerScheduler
from sitefleet.settings import FleetSettings, get_settings
from sitefleet.store import EntityStore
from sitefleet.timestamps import Clock, utc_now

logger = get_logger(__name__)

PUBLISH_POSTS = "publish-scheduled-posts"
PLAN_AUTOPOSTS = "plan-autoposts"
CHECK_DOMAINS = "check-domains"
CHECK_SERVERS = "check-servers"
PRUNE_TRIGGER_HISTORY = "prune-trigger-history"
RESET_DAILY_COUNTERS = "reset-daily-counters"


@dataclass(frozen=True)
class TriggerSpec:
    name: str
    interval: timedelta


def default_trigger_table(settings: FleetSettings) -> list[TriggerSpec]:
    """Names and intervals of every trigger the fleet knows about."""
    return [
        TriggerSpec(PUBLISH_POSTS, timedelta(seconds=settings.publish_posts_interval)),
        TriggerSpec(PLAN_AUTOPOSTS, timedelta(seconds=settings.autopost_interval)),
        TriggerSpec(CHECK_DOMAINS, timedelta(seconds=settings.domain_check_interval)),
        TriggerSpec(CHECK_SERVERS, timedelta(seconds=settings.server_check_interval)),
        TriggerSpec(PRUNE_TRIGGER_HISTORY, timedelta(seconds=settings.housekeeping_interval)),
        TriggerSpec(RESET_DAILY_COUNTERS, timedelta(seconds=settings.housekeeping_interval)),
    ]


def load_collaborators(import_path: str) -> Collaborators:
    """Call the ``package.module:factory`` named by *import_path*."""
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Collaborator factory must look like 'module:factory', got {import_path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import collaborator module {module_name!r}", cause=exc) from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"{import_path!r} is not a callable collaborator factory")
    collaborators = factory()
    if not isinstance(collaborators, Collaborators):
        raise ConfigError(f"{import_path!r} must return a Collaborators instance")
    return collaborators


@dataclass
class Fleet:
    """An assembled reconciliation core."""

    settings: FleetSettings
    db: Database
    store: EntityStore
    ledger: RunLedger
    pool: WorkerPool
    scheduler: TriggerScheduler
    reconcilers: dict[str, Reconciler] = field(default_factory=dict)
    clock: Clock = utc_now

    @classmethod
    def build(
        cls,
        settings: FleetSettings | None = None,
        *,
        collaborators: Collaborators | None = None,
        db: Database | None = None,
        clock: Clock = utc_now,
        backend: TickBackend | None = None,
    ) -> Fleet:
        settings = settings or get_settings()
        if collaborators is None:
            collaborators = (
                load_collaborators(settings.collaborators)
                if settings.collaborators
                else Collaborators()
            )
        db = db or Database.open(settings.database_path)
        store = EntityStore(db)
        ledger = RunLedger(db, instance_id=settings.instance_id)
        pool = WorkerPool(
            size=settings.pool_size,
            unit_timeout=settings.unit_timeout_seconds,
            submit_timeout=settings.submit_timeout_seconds,
            clock=clock,
        )
        scheduler = TriggerScheduler(
            ledger,
            backend,
            clock=clock,
            tick_seconds=settings.tick_seconds,
            staleness_multiplier=settings.staleness_multiplier,
            shutdown_grace_seconds=settings.shutdown_grace_seconds,
        )
        fleet = cls(settings, db, store, ledger, pool, scheduler, clock=clock)
        fleet._build_reconcilers(collaborators)
        fleet._register_triggers()
        return fleet

    def _build_reconcilers(self, collaborators: Collaborators) -> None:
        settings, store = self.settings, self.store

        publisher = collaborators.publisher or DirectoryPublisher(
            settings.publish_root, hostname_for=store.site_hostname
        )
        self.reconcilers[PUBLISH_POSTS] = ScheduledPostPublisher(
            store, publisher, batch_limit=settings.post_batch_limit, clock=self.clock
        )

        prober = collaborators.prober or HttpProber(degraded_after=settings.degraded_after_seconds)
        self.reconcilers[CHECK_SERVERS] = ServerHealthChecker(
            store, prober, probe_timeout=settings.probe_timeout_seconds, clock=self.clock
        )

        if collaborators.content is not None:
            self.reconcilers[PLAN_AUTOPOSTS] = AutopostPlanner(store, collaborators.content)
        else:
            logger.warning("trigger_disabled", trigger=PLAN_AUTOPOSTS, reason="no content source")

        if collaborators.dns is not None and collaborators.certificates is not None:
            self.reconcilers[CHECK_DOMAINS] = DomainStatusReconciler(
                store,
                collaborators.dns,
                collaborators.certificates,
                renewal_window=settings.renewal_window,
                max_auto_rechecks=settings.max_auto_rechecks,
                batch_limit=settings.domain_batch_limit,
                clock=self.clock,
            )
        else:
            logger.warning(
                "trigger_disabled", trigger=CHECK_DOMAINS, reason="no dns provider or certificate authority"
            )

    def _register_triggers(self) -> None:
        housekeeping = {
            PRUNE_TRIGGER_HISTORY: self.prune_trigger_history,
            RESET_DAILY_COUNTERS: self.reset_daily_counters,
        }
        for spec in default_trigger_table(self.settings):
            if spec.name in self.reconcilers:
                runnable = self._sweep_runnable(self.reconcilers[spec.name])
            elif spec.name in housekeeping:
                runnable = housekeeping[spec.name]
            else:
                continue
            self.scheduler.register_trigger(spec.name, spec.interval, runnable)

    def _sweep_runnable(self, reconciler: Reconciler):
        def sweep(fire_time: datetime) -> SweepReport:
            return run_sweep(
                reconciler, self.pool, fire_time, wait_timeout=self.settings.sweep_wait_seconds
            )

        return sweep

    # === Housekeeping ===

    def prune_trigger_history(self, now: datetime) -> int:
        cutoff = now - timedelta(days=self.settings.trigger_history_days)
        return self.ledger.prune(cutoff, keep=[t.name for t in self.scheduler.triggers])

    def reset_daily_counters(self, now: datetime) -> int:
        count = self.store.reset_autopost_counters()
        logger.info("daily_counters_reset", sites=count)
        return count

    # === Lifecycle ===

    def reconciler(self, name: str) -> Any:
        try:
            return self.reconcilers[name]
        except KeyError:
            raise ConfigError(f"Trigger {name!r} is not enabled in this fleet") from None

    def run_trigger(self, name: str) -> bool:
        return self.scheduler.run_now(name)

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.pool.shutdown(wait=False)

    def close(self) -> None:
        self.stop()
        self.pool.shutdown(wait=True)
        self.db.close()
