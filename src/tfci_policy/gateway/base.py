"""
Remote Run Gateway contract.

The gateway is the only I/O boundary of the policy core. It returns the raw
shapes below; the core never sees HTTP payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol, Union


@dataclass(frozen=True)
class RunSnapshot:
    """Point-in-time view of a run."""

    id: str
    status: str
    workspace_id: str | None = None
    policy_check_id: str | None = None


@dataclass(frozen=True)
class TaskStage:
    """A run stage that carries one or more policy evaluations."""

    id: str
    stage: str
    status: str
    policy_evaluation_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResultCount:
    passed: int = 0
    advisory_failed: int = 0
    mandatory_failed: int = 0
    errored: int = 0
    # Upstream total, when the API reports one. Never trusted.
    total: int | None = None


@dataclass(frozen=True)
class PolicyOutcome:
    """Outcome of a single policy inside a policy set."""

    policy_name: str
    enforcement_level: str
    outcome: str
    description: str | None = None


@dataclass(frozen=True)
class PolicySetOutcome:
    policy_set_name: str
    result_count: ResultCount
    outcomes: tuple[PolicyOutcome, ...] = ()


@dataclass(frozen=True)
class ModernEvaluation:
    """Task-stage policy evaluation (current API format)."""

    run_id: str
    stage_id: str
    evaluation_id: str
    status: str
    result_count: ResultCount
    policy_set_outcomes: tuple[PolicySetOutcome, ...] = ()
    kind: Literal["modern"] = field(default="modern", init=False)


@dataclass(frozen=True)
class LegacyCheck:
    """Policy check (pre task-stage API format)."""

    run_id: str
    check_id: str
    status: str
    outcomes: tuple[PolicyOutcome, ...] = ()
    total: int | None = None
    kind: Literal["legacy"] = field(default="legacy", init=False)


RawEvaluation = Union[ModernEvaluation, LegacyCheck]


class RunGateway(Protocol):
    """Operations the policy core needs from HCP Terraform / Terraform Enterprise."""

    async def read_run(self, run_id: str) -> RunSnapshot:
        ...

    async def list_evaluation_stages(self, run_id: str) -> list[TaskStage]:
        ...

    async def read_stage_evaluation(self, run_id: str, stage_id: str) -> ModernEvaluation:
        ...

    async def read_legacy_check(self, run_id: str, check_id: str) -> LegacyCheck:
        ...

    async def override_stage(self, stage_id: str, comment: str) -> TaskStage:
        ...

    async def override_legacy_check(self, check_id: str) -> str:
        ...

    async def add_comment(self, run_id: str, body: str) -> None:
        ...
