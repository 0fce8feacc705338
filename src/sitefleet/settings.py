"""Runtime settings for sitefleet.

Every tunable of the reconciliation core lives here so operators can adjust
cadence, concurrency and thresholds through environment variables
(``SITEFLEET_*``) or a ``.env`` file without touching code.

Fields
──────
database_path          : sqlite file holding entities and the run ledger
log_level / json_logs  : structlog configuration
tick_seconds           : resolution of the trigger loop
pool_size              : shared worker pool slots across all reconcilers
unit_timeout_seconds   : per work unit deadline
staleness_multiplier   : running ledger entries older than this many
                         intervals are reclaimed
renewal_window_days    : certificates expiring inside this window are renewed
max_auto_rechecks      : failed domains re-armed automatically this many times

Tags:
    settings, configuration, pydantic, environment, sitefleet
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FleetSettings(BaseSettings):
    """Settings for the scheduler, worker pool and reconcilers."""

    model_config = SettingsConfigDict(
        env_prefix="SITEFLEET_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    database_path: Path = Field(
        default_factory=lambda: Path.home() / ".sitefleet" / "sitefleet.db",
        description="sqlite database holding entities and trigger runs",
    )
    publish_root: Path = Field(
        default_factory=lambda: Path.home() / ".sitefleet" / "public",
        description="Root directory used by DirectoryPublisher",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    # ── Scheduler ────────────────────────────────────────────────
    tick_seconds: float = Field(default=1.0, gt=0)
    staleness_multiplier: float = Field(default=3.0, ge=1.0)
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)
    instance_id: str | None = None

    # ── Worker pool ──────────────────────────────────────────────
    pool_size: int = Field(default=8, ge=1)
    unit_timeout_seconds: float = Field(default=60.0, gt=0)
    submit_timeout_seconds: float | None = None
    sweep_wait_seconds: float = Field(default=240.0, gt=0)

    # ── Trigger intervals (seconds) ──────────────────────────────
    publish_posts_interval: int = Field(default=60, ge=1)
    autopost_interval: int = Field(default=300, ge=1)
    domain_check_interval: int = Field(default=300, ge=1)
    server_check_interval: int = Field(default=600, ge=1)
    housekeeping_interval: int = Field(default=86_400, ge=1)

    # ── Reconcilers ──────────────────────────────────────────────
    renewal_window_days: int = Field(default=30, ge=0)
    max_auto_rechecks: int = Field(default=3, ge=0)
    domain_batch_limit: int = Field(default=50, ge=1)
    post_batch_limit: int = Field(default=100, ge=1)
    probe_timeout_seconds: float = Field(default=2.0, gt=0)
    degraded_after_seconds: float = Field(default=1.0, gt=0)
    trigger_history_days: int = Field(default=30, ge=1)

    # ── Integrations ─────────────────────────────────────────────
    collaborators: str | None = Field(
        default=None,
        description="Import path 'package.module:factory' returning the DNS, "
        "certificate and content collaborators for `sitefleet run`",
    )

    @property
    def renewal_window(self) -> timedelta:
        return timedelta(days=self.renewal_window_days)


@lru_cache
def get_settings() -> FleetSettings:
    return FleetSettings()
