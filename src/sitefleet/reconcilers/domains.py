"""Domain status reconciler: drives the DNS/SSL lifecycle of each domain.

Manifesto:
    A domain is only ever moved one legal step at a time along the status
    graph, and only by the result of the most recent check. Planning a
    check bumps the domain's ``check_attempt``; a result carrying an older
    attempt (a duplicate unit, or one overtaken by an explicit recheck) is
    discarded instead of applied.

Architecture:
    ::

        planning (scheduler thread)          unit (worker thread)
        ─────────────────────────────        ───────────────────────────
        unchecked / *_failed → ns_pending ─► check_nameservers(hostname)
        ns_pending           (re-check)   ─►   active  → ns_active → ssl_*
                                               pending → unchanged
                                               failed  → ns_failed
        ns_active  → ssl_active (valid cert, no unit)
        ns_active  → ssl_pending          ─► issue_or_renew(hostname)
        ssl_active → ssl_pending (renew)  ─►   active  → ssl_active
        ssl_pending          (re-check)   ─►   failed  → ssl_failed

        unit error / timeout: ns_pending → ns_failed, ssl_pending → ssl_failed

Tags:
    reconciler, domains, dns, ssl, state-machine, sitefleet
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

from sitefleet.collaborators import CertificateAuthority, DnsProvider
from sitefleet.execution.work import Target, UnitResult, WorkUnit
from sitefleet.logging import get_logger
from sitefleet.models import (
    CertificateResult,
    Domain,
    DomainStatus,
    NameserverStatus,
    validate_domain_transition,
)
from sitefleet.store import EntityStore
from sitefleet.timestamps import Clock, utc_now

logger = get_logger(__name__)

CHECK_NAMESERVERS = "check_nameservers"
ISSUE_CERTIFICATE = "issue_certificate"

_ARM_FOR_NAMESERVERS = frozenset({
    DomainStatus.UNCHECKED,
    DomainStatus.NS_FAILED,
    DomainStatus.SSL_FAILED,
})


class DomainStatusReconciler:
    """Advance domains through nameserver and certificate checks."""

    trigger = "check-domains"
    kind = "domain"

    def __init__(
        self,
        store: EntityStore,
        dns: DnsProvider,
        certificates: CertificateAuthority,
        *,
        renewal_window: timedelta = timedelta(days=30),
        max_auto_rechecks: int = 3,
        batch_limit: int = 50,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.dns = dns
        self.certificates = certificates
        self.renewal_window = renewal_window
        self.max_auto_rechecks = max_auto_rechecks
        self.batch_limit = batch_limit
        self._clock = clock

    def select_candidates(self, now: datetime) -> list[Domain]:
        return self.store.domains_needing_check(
            now,
            renewal_window=self.renewal_window,
            max_auto_rechecks=self.max_auto_rechecks,
            limit=self.batch_limit,
        )

    def plan_unit(self, domain: Domain, now: datetime) -> WorkUnit | None:
        status = domain.status
        if status in _ARM_FOR_NAMESERVERS:
            armed, action = DomainStatus.NS_PENDING, CHECK_NAMESERVERS
        elif status is DomainStatus.NS_PENDING:
            armed, action = status, CHECK_NAMESERVERS
        elif status is DomainStatus.NS_ACTIVE:
            if domain.has_valid_certificate(now, self.renewal_window):
                self._promote_with_existing_certificate(domain)
                return None
            armed, action = DomainStatus.SSL_PENDING, ISSUE_CERTIFICATE
        elif status is DomainStatus.SSL_PENDING:
            armed, action = status, ISSUE_CERTIFICATE
        elif status is DomainStatus.SSL_ACTIVE:
            if domain.has_valid_certificate(now, self.renewal_window):
                return None
            armed, action = DomainStatus.SSL_PENDING, ISSUE_CERTIFICATE
        else:
            return None

        fields = {}
        if armed is not status:
            validate_domain_transition(status, armed)
            fields["status"] = armed
        if not self.store.update_domain(
            domain.id,
            expect_status=status,
            expect_attempt=domain.check_attempt,
            bump_attempt=True,
            **fields,
        ):
            logger.debug("domain_changed_during_planning", domain_id=domain.id)
            return None

        return WorkUnit(
            trigger=self.trigger,
            target=Target(self.kind, domain.id),
            action=action,
            payload={"hostname": domain.hostname, "status": armed.value},
            attempt=domain.check_attempt + 1,
        )

    def _promote_with_existing_certificate(self, domain: Domain) -> None:
        validate_domain_transition(domain.status, DomainStatus.SSL_ACTIVE)
        if self.store.update_domain(
            domain.id,
            expect_status=domain.status,
            expect_attempt=domain.check_attempt,
            status=DomainStatus.SSL_ACTIVE,
        ):
            logger.info("domain_certificate_still_valid", domain_id=domain.id,
                        hostname=domain.hostname)

    def execute(self, unit: WorkUnit) -> NameserverStatus | CertificateResult:
        hostname = unit.payload["hostname"]
        if unit.action == CHECK_NAMESERVERS:
            return NameserverStatus(self.dns.check_nameservers(hostname))
        if unit.action == ISSUE_CERTIFICATE:
            return self.certificates.issue_or_renew(hostname)
        raise ValueError(f"Unknown domain action: {unit.action}")

    def apply_result(self, result: UnitResult) -> None:
        unit = result.unit
        expected = DomainStatus(unit.payload["status"])
        domain = self.store.get_domain(unit.target.id)
        if domain.check_attempt != unit.attempt or domain.status is not expected:
            logger.info(
                "stale_domain_result_discarded",
                domain_id=domain.id,
                unit_attempt=unit.attempt,
                current_attempt=domain.check_attempt,
                status=domain.status.value,
            )
            return

        checked_at = result.started_at or self._clock()
        if not result.ok:
            target = (
                DomainStatus.NS_FAILED
                if expected is DomainStatus.NS_PENDING
                else DomainStatus.SSL_FAILED
            )
            self._transition(domain, target, checked_at, error=result.error_message)
        elif unit.action == CHECK_NAMESERVERS:
            self._apply_nameservers(domain, result.value, checked_at)
        else:
            self._apply_certificate(domain, result.value, checked_at)

    def _apply_nameservers(
        self, domain: Domain, answer: NameserverStatus, checked_at: datetime
    ) -> None:
        if answer is NameserverStatus.ACTIVE:
            # ns_active is stored before any ssl_* status, each step its own CAS
            if not self._transition(domain, DomainStatus.NS_ACTIVE, checked_at):
                return
            domain = replace(
                domain,
                status=DomainStatus.NS_ACTIVE,
                last_checked_at=checked_at,
                failure_count=0,
                error_message=None,
            )
            follow_up = (
                DomainStatus.SSL_ACTIVE
                if domain.has_valid_certificate(checked_at, self.renewal_window)
                else DomainStatus.SSL_PENDING
            )
            self._transition(domain, follow_up, checked_at)
        elif answer is NameserverStatus.PENDING:
            self.store.update_domain(
                domain.id,
                expect_status=domain.status,
                expect_attempt=domain.check_attempt,
                last_checked_at=checked_at,
            )
            logger.debug("domain_nameservers_pending", domain_id=domain.id)
        else:
            self._transition(
                domain, DomainStatus.NS_FAILED, checked_at,
                error="nameservers do not point at the fleet",
            )

    def _apply_certificate(
        self, domain: Domain, answer: CertificateResult, checked_at: datetime
    ) -> None:
        if answer.active:
            self._transition(
                domain, DomainStatus.SSL_ACTIVE, checked_at, ssl_expires_at=answer.expires_at
            )
        else:
            self._transition(
                domain, DomainStatus.SSL_FAILED, checked_at,
                error=answer.detail or "certificate issuance failed",
            )

    def _transition(
        self,
        domain: Domain,
        target: DomainStatus,
        checked_at: datetime,
        *,
        error: str | None = None,
        **extra,
    ) -> bool:
        validate_domain_transition(domain.status, target)
        fields = {"status": target, "last_checked_at": checked_at, **extra}
        if target.is_failed:
            fields["failure_count"] = domain.failure_count + 1
            fields["error_message"] = error
        else:
            fields["failure_count"] = 0
            fields["error_message"] = None

        applied = self.store.update_domain(
            domain.id,
            expect_status=domain.status,
            expect_attempt=domain.check_attempt,
            **fields,
        )
        if not applied:
            logger.info("stale_domain_result_discarded", domain_id=domain.id)
            return False

        log = logger.warning if target.is_failed else logger.info
        log(
            "domain_status_changed",
            domain_id=domain.id,
            hostname=domain.hostname,
            old_status=domain.status.value,
            new_status=target.value,
            error=error,
        )
        return True

    def request_recheck(self, domain_id: int) -> Domain:
        return request_recheck(self.store, domain_id)


def request_recheck(store: EntityStore, domain_id: int) -> Domain:
    """Explicit recheck: put any domain back to ``ns_pending``.

    Bumps the check attempt so results of checks already in flight are
    discarded, and resets the automatic recheck budget.
    """
    domain = store.reset_domain_for_recheck(domain_id)
    logger.info("domain_recheck_requested", domain_id=domain_id, hostname=domain.hostname)
    return domain
