"""
Typed errors for sitefleet.

The reconciliation core reports entity-level failures through entity state
(``ns_failed``, ``ssl_failed``, ``unreachable``, ``failed`` posts), so
exceptions here are about the machinery itself: configuration, storage,
illegal state transitions and the worker pool.

Architecture:
    ::

        FleetError (category, retryable, context)
        ├── TransientError        (NETWORK, retryable)
        │   ├── UnitTimeoutError
        │   └── CollaboratorError
        ├── ConfigError           (CONFIG)
        │   └── TriggerNotFoundError
        ├── StoreError            (DATABASE)
        ├── InvalidTransitionError (ORCHESTRATION)
        └── PoolSaturatedError    (ORCHESTRATION, retryable)

Failure taxonomy:
    (a) transient entity-check failure: recorded on the entity, retried by a
        later sweep, never escalated
    (b) unit fault: caught by the worker pool, converted to a failed result
    (c) trigger-level fault: logged, ledger entry finished with ``last_error``
    (d) ledger contention: the loser skips the tick, not an error

Tags:
    errors, exceptions, error-category, sitefleet
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for logging and retry decisions."""

    NETWORK = "NETWORK"
    DATABASE = "DATABASE"
    CONFIG = "CONFIG"
    ORCHESTRATION = "ORCHESTRATION"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


class FleetError(Exception):
    """Base class for all sitefleet errors.

    Attributes:
        message: Human readable message
        category: :class:`ErrorCategory` for routing and logging
        retryable: Whether a later sweep may succeed
        context: Extra metadata (entity ids, trigger names)
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> FleetError:
        """Attach metadata and return self for chaining."""
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.context:
            result["context"] = self.context
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS
# =============================================================================


class TransientError(FleetError):
    """Temporary failure; the next sweep may succeed."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class UnitTimeoutError(TransientError):
    """A work unit exceeded its deadline."""

    def __init__(self, unit_id: str, timeout: float, **kwargs: Any):
        self.unit_id = unit_id
        self.timeout = timeout
        super().__init__(f"Work unit {unit_id} timed out after {timeout:g}s", **kwargs)


class CollaboratorError(TransientError):
    """An external collaborator (DNS, CA, publisher, prober) failed."""


# =============================================================================
# CONFIGURATION
# =============================================================================


class ConfigError(FleetError):
    """Invalid configuration or wiring."""

    default_category = ErrorCategory.CONFIG


class TriggerNotFoundError(ConfigError):
    """No trigger registered under the given name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Trigger not found: {name}")


# =============================================================================
# STORAGE
# =============================================================================


class StoreError(FleetError):
    """Entity store or run ledger failure."""

    default_category = ErrorCategory.DATABASE


class EntityNotFoundError(StoreError):
    """The requested entity does not exist."""

    def __init__(self, kind: str, entity_id: int):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")


# =============================================================================
# ORCHESTRATION
# =============================================================================


class InvalidTransitionError(FleetError, ValueError):
    """Raised when an illegal state transition is attempted.

    Transition validation is deliberately strict. If a legitimate transition
    is blocked, add it to the transition table explicitly.
    """

    default_category = ErrorCategory.ORCHESTRATION

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} -> {target}")


class PoolSaturatedError(FleetError):
    """The worker pool stayed saturated past the submit timeout."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = True


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, FleetError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError, OSError))


__all__ = [
    "ErrorCategory",
    "FleetError",
    "TransientError",
    "UnitTimeoutError",
    "CollaboratorError",
    "ConfigError",
    "TriggerNotFoundError",
    "StoreError",
    "EntityNotFoundError",
    "InvalidTransitionError",
    "PoolSaturatedError",
    "is_retryable",
]
