"""Work units and their results.

A work unit is a self-contained description of one corrective action on one
entity. Units are built by a reconciler, executed by the worker pool and
never persisted.

Tags:
    execution, work-unit, sitefleet

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sitefleet.timestamps import short_token


@dataclass(frozen=True)
class Target:
    """Entity a unit acts on."""

    kind: str
    id: int

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass(frozen=True)
class WorkUnit:
    """One corrective action on one entity.

    ``attempt`` carries the entity's check attempt at planning time so the
    result can be applied conditionally.

    Example:
        >>> unit = WorkUnit("check-domains", Target("domain", 7), "check_nameservers",
        ...                 {"hostname": "example.com"}, attempt=3)
        >>> str(unit.target)
        'domain:7'
    """

    trigger: str
    target: Target
    action: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    attempt: int = 0
    unit_id: str = field(default_factory=short_token)


class UnitOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class UnitResult:
    """What happened to a unit, reported exactly once."""

    unit: WorkUnit
    outcome: UnitOutcome
    value: Any = None
    error: BaseException | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is UnitOutcome.SUCCEEDED

    @property
    def error_message(self) -> str | None:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__
