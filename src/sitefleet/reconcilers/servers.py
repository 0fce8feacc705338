"""Server health checker."""

from __future__ import annotations

from datetime import datetime

from sitefleet.collaborators import Prober
from sitefleet.execution.work import Target, UnitResult, WorkUnit
from sitefleet.logging import get_logger
from sitefleet.models import HealthStatus, Server
from sitefleet.store import EntityStore
from sitefleet.timestamps import Clock, utc_now

logger = get_logger(__name__)


class ServerHealthChecker:
    """Probe every active server and record its health.

    ``last_health_check_at`` is the time the probe started. A probe that
    raises or overruns the unit deadline records ``unreachable``.
    """

    trigger = "check-servers"
    kind = "server"

    def __init__(
        self,
        store: EntityStore,
        prober: Prober,
        *,
        probe_timeout: float = 2.0,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.prober = prober
        self.probe_timeout = probe_timeout
        self._clock = clock

    def select_candidates(self, now: datetime) -> list[Server]:
        return self.store.active_servers()

    def plan_unit(self, server: Server, now: datetime) -> WorkUnit:
        return WorkUnit(
            trigger=self.trigger,
            target=Target(self.kind, server.id),
            action="probe",
            payload={"address": server.address},
        )

    def execute(self, unit: WorkUnit) -> HealthStatus:
        server = self.store.get_server(unit.target.id)
        return HealthStatus(self.prober.probe(server, self.probe_timeout))

    def apply_result(self, result: UnitResult) -> None:
        server_id = result.unit.target.id
        status = result.value if result.ok else HealthStatus.UNREACHABLE
        checked_at = result.started_at or self._clock()
        self.store.record_server_health(server_id, status, checked_at)

        if status is HealthStatus.UNREACHABLE:
            logger.warning("server_unreachable", server_id=server_id, error=result.error_message)
        else:
            logger.debug("server_health_recorded", server_id=server_id, status=status.value)
