"""Tests for entity models and the domain transition graph."""

from datetime import UTC, datetime, timedelta

import pytest

from sitefleet.errors import FleetError, InvalidTransitionError
from sitefleet.models import (
    DOMAIN_VALID_TRANSITIONS,
    Domain,
    DomainStatus,
    Site,
    SiteStatus,
    TriggerRun,
    parse_frequency,
    validate_domain_transition,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

ALLOWED = [
    (DomainStatus.UNCHECKED, DomainStatus.NS_PENDING),
    (DomainStatus.NS_FAILED, DomainStatus.NS_PENDING),
    (DomainStatus.SSL_FAILED, DomainStatus.NS_PENDING),
    (DomainStatus.NS_PENDING, DomainStatus.NS_ACTIVE),
    (DomainStatus.NS_PENDING, DomainStatus.NS_FAILED),
    (DomainStatus.NS_ACTIVE, DomainStatus.SSL_PENDING),
    (DomainStatus.NS_ACTIVE, DomainStatus.SSL_ACTIVE),
    (DomainStatus.SSL_PENDING, DomainStatus.SSL_ACTIVE),
    (DomainStatus.SSL_PENDING, DomainStatus.SSL_FAILED),
    (DomainStatus.SSL_ACTIVE, DomainStatus.SSL_PENDING),
]


class TestDomainTransitions:
    """The status graph is the only way a domain moves."""

    @pytest.mark.parametrize("current,target", ALLOWED)
    def test_allowed_transitions(self, current, target):
        validate_domain_transition(current, target)

    def test_table_matches_allowed_edges(self):
        edges = {(c, t) for c, targets in DOMAIN_VALID_TRANSITIONS.items() for t in targets}
        assert edges == set(ALLOWED)

    def test_ns_pending_cannot_jump_to_ssl_active(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_domain_transition(DomainStatus.NS_PENDING, DomainStatus.SSL_ACTIVE)
        assert "ns_pending -> ssl_active" in str(exc_info.value)

    def test_every_edge_not_listed_is_rejected(self):
        for current in DomainStatus:
            for target in DomainStatus:
                if (current, target) in ALLOWED:
                    continue
                with pytest.raises(InvalidTransitionError):
                    validate_domain_transition(current, target)

    def test_invalid_transition_is_value_error_and_fleet_error(self):
        with pytest.raises(ValueError):
            validate_domain_transition(DomainStatus.SSL_ACTIVE, DomainStatus.UNCHECKED)
        with pytest.raises(FleetError):
            validate_domain_transition(DomainStatus.SSL_ACTIVE, DomainStatus.UNCHECKED)

    def test_is_failed(self):
        assert DomainStatus.NS_FAILED.is_failed
        assert DomainStatus.SSL_FAILED.is_failed
        assert not DomainStatus.NS_PENDING.is_failed


class TestDomain:
    def test_valid_certificate_outside_window(self):
        domain = Domain(id=1, hostname="a.test", ssl_expires_at=NOW + timedelta(days=60))
        assert domain.has_valid_certificate(NOW, timedelta(days=30))

    def test_certificate_inside_window_is_not_valid(self):
        domain = Domain(id=1, hostname="a.test", ssl_expires_at=NOW + timedelta(days=10))
        assert not domain.has_valid_certificate(NOW, timedelta(days=30))

    def test_unknown_expiry_is_not_valid(self):
        assert not Domain(id=1, hostname="a.test").has_valid_certificate(NOW, timedelta(days=30))


class TestSite:
    def test_never_autoposted_is_due_immediately(self):
        assert Site(id=1).autopost_due_at() is None

    def test_due_at_adds_frequency(self):
        site = Site(id=1, autopost_frequency=timedelta(days=1), last_autopost_at=NOW)
        assert site.autopost_due_at() == NOW + timedelta(days=1)

    def test_only_published_sites_are_publishable(self):
        assert Site(id=1, status=SiteStatus.PUBLISHED).is_publishable
        assert not Site(id=1, status=SiteStatus.DRAFT).is_publishable
        assert not Site(id=1, status=SiteStatus.UNPUBLISHED).is_publishable


class TestParseFrequency:
    def test_named(self):
        assert parse_frequency("daily") == timedelta(days=1)
        assert parse_frequency("every_3_days") == timedelta(days=3)
        assert parse_frequency("biweekly") == timedelta(days=14)

    def test_seconds(self):
        assert parse_frequency(3600) == timedelta(hours=1)

    def test_timedelta_passthrough(self):
        assert parse_frequency(timedelta(hours=6)) == timedelta(hours=6)

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown autopost frequency"):
            parse_frequency("hourly-ish")

    def test_non_positive(self):
        with pytest.raises(ValueError):
            parse_frequency(0)


class TestTriggerRun:
    def test_idle_entry_is_never_stale(self):
        run = TriggerRun(name="x", running=False, started_at=NOW - timedelta(days=1))
        assert not run.is_stale(NOW, timedelta(minutes=1))

    def test_running_entry_becomes_stale(self):
        run = TriggerRun(name="x", running=True, started_at=NOW - timedelta(minutes=10))
        assert run.is_stale(NOW, timedelta(minutes=5))
        assert not run.is_stale(NOW, timedelta(minutes=15))
