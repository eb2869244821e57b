"""Pydantic models for the reconciliation policy file.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to the runtime scope, predicate and run options
"""

from __future__ import annotations

import dataclasses
from typing import Annotated

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from .config import MAX_BATCH_SIZE_LIMIT, MAX_CONCURRENCY_CAP, RunOptions
from .differ import MutablePredicate, always_mutable, power_state_predicate
from .endpoint import ScopeFilter
from .records import PowerState

DEFAULT_FIELD_NAME = "tools.toolsUpgradePolicy"

# Accepted values for fields whose domain is known up front.
# Fields not listed here are passed through unchecked.
KNOWN_FIELD_VALUES: dict[str, frozenset[str]] = {
    "tools.toolsUpgradePolicy": frozenset({"manual", "upgradeAtPowerCycle"}),
}


class ScopeSpec(BaseModel):
    """Which entities the policy applies to."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    datacenter: str | None = None
    cluster: str | None = None

    @field_validator("include", "exclude")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        for pattern in v:
            if not pattern.strip():
                raise ValueError("name patterns cannot be empty")
        return v

    def to_scope_filter(self) -> ScopeFilter:
        return ScopeFilter(
            include=tuple(self.include),
            exclude=tuple(self.exclude),
            datacenter=self.datacenter,
            cluster=self.cluster,
        )


class BatchOverrides(BaseModel):
    """Per-policy overrides of the execution knobs."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    batch_size: Annotated[
        int | None, Field(ge=1, le=MAX_BATCH_SIZE_LIMIT, alias="batchSize")
    ] = None
    failure_threshold: Annotated[
        float | None, Field(gt=0.0, le=1.0, alias="failureThreshold")
    ] = None
    concurrency_cap: Annotated[
        int | None, Field(ge=1, le=MAX_CONCURRENCY_CAP, alias="concurrencyCap")
    ] = None

    def apply_to(self, options: RunOptions) -> RunOptions:
        """Return options with every override that is set applied."""
        changes = {
            name: value
            for name, value in (
                ("batch_size", self.batch_size),
                ("failure_threshold", self.failure_threshold),
                ("concurrency_cap", self.concurrency_cap),
            )
            if value is not None
        }
        if not changes:
            return options
        return dataclasses.replace(options, **changes)


class PolicySpec(BaseModel):
    """Desired-state policy for one configuration field."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    field_name: Annotated[str, Field(min_length=1, alias="fieldName")] = DEFAULT_FIELD_NAME
    desired_value: Annotated[str, Field(min_length=1, alias="desiredValue")]
    scope: ScopeSpec = Field(default_factory=ScopeSpec)
    mutable_power_states: list[PowerState] | None = Field(None, alias="mutablePowerStates")
    batch: BatchOverrides | None = None

    @field_validator("desired_value")
    @classmethod
    def validate_desired_value(cls, v: str, info: ValidationInfo) -> str:
        field_name = info.data.get("field_name", DEFAULT_FIELD_NAME)
        allowed = KNOWN_FIELD_VALUES.get(field_name)
        if allowed is not None and v not in allowed:
            raise ValueError(f"desiredValue for {field_name} must be one of {sorted(allowed)}")
        return v

    @field_validator("mutable_power_states", mode="before")
    @classmethod
    def coerce_yaml_booleans(cls, v: object) -> object:
        # YAML 1.1 reads unquoted On/Off as booleans
        if isinstance(v, list):
            return [
                (PowerState.ON if item else PowerState.OFF) if isinstance(item, bool) else item
                for item in v
            ]
        return v

    @field_validator("mutable_power_states")
    @classmethod
    def validate_power_states(cls, v: list[PowerState] | None) -> list[PowerState] | None:
        if v is not None and not v:
            raise ValueError("mutablePowerStates cannot be empty; omit it to allow all states")
        return v

    def to_scope_filter(self) -> ScopeFilter:
        return self.scope.to_scope_filter()

    def mutable_predicate(self) -> MutablePredicate:
        """Predicate gating which entities may be mutated."""
        if self.mutable_power_states is None:
            return always_mutable
        return power_state_predicate(self.mutable_power_states)

    def run_options(self, base: RunOptions) -> RunOptions:
        """Apply the policy's batch overrides to base options."""
        if self.batch is None:
            return base
        return self.batch.apply_to(base)
