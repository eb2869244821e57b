"""Collaborator interfaces consumed by the reconciler.

The reconciler only talks to the outside world through these protocols.
Adapters (see vsphere.py) translate vendor errors into errors.py types.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from .records import PowerState


@dataclass(frozen=True)
class ScopeFilter:
    """Selects which entities of an endpoint take part in a run.

    Patterns are fnmatch-style and matched case-insensitively against the
    entity name. An empty include list means "everything".
    """

    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    datacenter: str | None = None
    cluster: str | None = None

    def matches(self, name: str) -> bool:
        lowered = name.lower()
        if any(fnmatch.fnmatch(lowered, pattern.lower()) for pattern in self.exclude):
            return False
        if not self.include:
            return True
        return any(fnmatch.fnmatch(lowered, pattern.lower()) for pattern in self.include)


@dataclass(frozen=True)
class RawEntity:
    """Entity descriptor as returned by an endpoint listing."""

    id: str
    name: str = ""
    power_state: PowerState = PowerState.UNKNOWN
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PerformanceSample:
    """Live load signal used by the pacing policy."""

    error_rate_percent: float = 0.0
    latency_ms: float = 0.0


@runtime_checkable
class ManagementEndpoint(Protocol):
    """Remote fleet-management API.

    Implementations are blocking; the reconciler runs them in an executor.
    """

    @property
    def name(self) -> str: ...

    def list_entities(self, scope: ScopeFilter) -> list[RawEntity]:
        """List entities in scope.

        Raises:
            ConnectivityError: If the endpoint is unreachable.
            AuthorizationError: If the session is not authorized.
        """
        ...

    def read_field(self, entity_id: str, field_name: str) -> str | None:
        """Read one configuration field of an entity.

        Raises:
            NotFoundError: If the entity does not exist.
        """
        ...

    def write_field(self, entity_id: str, field_name: str, value: str) -> None:
        """Write one configuration field of an entity.

        Raises:
            ConflictError, EndpointPermissionError, NotFoundError,
            EndpointTimeoutError, InvalidValueError.
        """
        ...


@runtime_checkable
class PerformanceSignal(Protocol):
    """Source of live error-rate and latency readings."""

    def sample(self) -> PerformanceSample: ...
