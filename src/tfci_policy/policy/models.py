"""
Canonical policy evaluation and override models.

These are the only shapes the CLI and other callers see, whichever API format
the run was evaluated with. Instances are frozen and validate their own
invariants at construction, so an inconsistent value cannot exist.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tfci_policy.core.errors import InvalidJustificationError, InvalidRunIDError

RUN_ID_PATTERN = re.compile(r"^[a-z]+-[a-zA-Z0-9]+$")
MIN_JUSTIFICATION_LENGTH = 10
AWAITING_DECISION = "post_plan_awaiting_decision"


def valid_run_id(value: str | None) -> bool:
    """Check that a value looks like an HCP Terraform resource ID."""
    if not value:
        return False
    return RUN_ID_PATTERN.fullmatch(value) is not None


class PolicyStatus(StrEnum):
    passed = "passed"
    failed = "failed"
    errored = "errored"
    pending = "pending"
    running = "running"


class EnforcementLevel(StrEnum):
    mandatory = "mandatory"
    advisory = "advisory"


class PolicyDetailStatus(StrEnum):
    failed = "failed"
    errored = "errored"


class OverrideFinalStatus(StrEnum):
    policy_override = "policy_override"
    post_plan_completed = "post_plan_completed"
    apply_queued = "apply_queued"
    discarded = "discarded"
    errored = "errored"


# Final statuses that mean the run moved past the policy gate.
OVERRIDE_SUCCESS_STATUSES = frozenset(
    {
        OverrideFinalStatus.policy_override,
        OverrideFinalStatus.post_plan_completed,
        OverrideFinalStatus.apply_queued,
    }
)


class PolicyDetail(BaseModel):
    """A single failed or errored policy."""

    model_config = ConfigDict(frozen=True)

    policy_name: str = Field(min_length=1)
    enforcement_level: EnforcementLevel
    status: PolicyDetailStatus
    description: str | None = None


class PolicyEvaluation(BaseModel):
    """Normalized policy evaluation results for a run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    policy_stage_id: str | None = None
    policy_check_id: str | None = None
    total_count: int = Field(ge=0)
    passed_count: int = Field(ge=0)
    advisory_failed_count: int = Field(ge=0)
    mandatory_failed_count: int = Field(ge=0)
    errored_count: int = Field(ge=0)
    failed_policies: tuple[PolicyDetail, ...] = ()
    status: PolicyStatus
    requires_override: bool

    @field_validator("run_id")
    @classmethod
    def _check_run_id(cls, value: str) -> str:
        if not valid_run_id(value):
            raise ValueError(f"invalid run ID: {value}")
        return value

    @model_validator(mode="after")
    def _check_integrity(self) -> PolicyEvaluation:
        if bool(self.policy_stage_id) == bool(self.policy_check_id):
            raise ValueError("exactly one of policy_stage_id and policy_check_id must be set")

        expected_total = (
            self.passed_count
            + self.advisory_failed_count
            + self.mandatory_failed_count
            + self.errored_count
        )
        if self.total_count != expected_total:
            raise ValueError(
                f"total count mismatch: expected {expected_total}, got {self.total_count}"
            )

        if self.requires_override != (self.mandatory_failed_count > 0):
            raise ValueError("requires_override does not match mandatory_failed_count")

        failed_limit = self.mandatory_failed_count + self.advisory_failed_count
        if len(self.failed_policies) > failed_limit:
            raise ValueError(
                f"{len(self.failed_policies)} failed policies listed but only "
                f"{failed_limit} failures counted"
            )
        return self


class PolicyOverride(BaseModel):
    """Record of one override call and the run status it produced."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    policy_stage_id: str | None = None
    policy_check_id: str | None = None
    justification: str = Field(min_length=MIN_JUSTIFICATION_LENGTH)
    initial_status: str
    final_status: OverrideFinalStatus
    override_complete: bool
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("run_id")
    @classmethod
    def _check_run_id(cls, value: str) -> str:
        if not valid_run_id(value):
            raise ValueError(f"invalid run ID: {value}")
        return value

    @field_validator("initial_status")
    @classmethod
    def _check_initial_status(cls, value: str) -> str:
        if value != AWAITING_DECISION:
            raise ValueError(f"invalid initial status: {value}, expected {AWAITING_DECISION}")
        return value

    @field_validator("timestamp")
    @classmethod
    def _check_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _check_integrity(self) -> PolicyOverride:
        if bool(self.policy_stage_id) == bool(self.policy_check_id):
            raise ValueError("exactly one of policy_stage_id and policy_check_id must be set")
        if self.override_complete and self.final_status not in OVERRIDE_SUCCESS_STATUSES:
            raise ValueError(f"override cannot be complete with final status {self.final_status}")
        return self


@dataclass(frozen=True)
class GetPolicyEvaluationOptions:
    """Options for retrieving a run's policy evaluation."""

    run_id: str
    no_wait: bool = False

    def validate(self) -> None:
        if not valid_run_id(self.run_id):
            raise InvalidRunIDError(self.run_id)


@dataclass(frozen=True)
class OverridePolicyOptions:
    """Options for overriding a run's mandatory policy failures."""

    run_id: str
    justification: str

    def validate(self) -> None:
        if not valid_run_id(self.run_id):
            raise InvalidRunIDError(self.run_id)
        if len(self.justification) < MIN_JUSTIFICATION_LENGTH:
            raise InvalidJustificationError(len(self.justification), MIN_JUSTIFICATION_LENGTH)
