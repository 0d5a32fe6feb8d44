"""
HCP Terraform / Terraform Enterprise run gateway.

Speaks the JSON:API v2 endpoints for runs, task stages, policy evaluations,
policy checks and run comments, and converts their payloads into the raw
gateway shapes consumed by the policy core.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from tfci_policy.clients.base import BaseHTTPClient
from tfci_policy.core.errors import NotFoundError, RunNotFoundError
from tfci_policy.gateway.base import (
    LegacyCheck,
    ModernEvaluation,
    PolicyOutcome,
    PolicySetOutcome,
    ResultCount,
    RunSnapshot,
    TaskStage,
)

logger = structlog.get_logger()

DEFAULT_HOSTNAME = "app.terraform.io"
DEFAULT_USER_AGENT = "tfci-policy/0.1.0"
OUTCOMES_PAGE_SIZE = 100


def _relationship_ids(resource: dict[str, Any], name: str) -> list[str]:
    data = (resource.get("relationships") or {}).get(name, {}).get("data")
    if data is None:
        return []
    if isinstance(data, dict):
        data = [data]
    return [item["id"] for item in data if item.get("id")]


def _parse_result_count(raw: dict[str, Any] | None) -> ResultCount:
    raw = raw or {}
    return ResultCount(
        passed=int(raw.get("passed", 0)),
        advisory_failed=int(raw.get("advisory-failed", 0)),
        mandatory_failed=int(raw.get("mandatory-failed", 0)),
        errored=int(raw.get("errored", 0)),
        total=raw.get("total"),
    )


def _parse_task_stage(resource: dict[str, Any]) -> TaskStage:
    attributes = resource.get("attributes") or {}
    return TaskStage(
        id=resource["id"],
        stage=attributes.get("stage", ""),
        status=attributes.get("status", ""),
        policy_evaluation_ids=tuple(_relationship_ids(resource, "policy-evaluations")),
    )


def _parse_sentinel_outcomes(sentinel: dict[str, Any] | None) -> list[PolicyOutcome]:
    """Flatten the sentinel section of a policy check result into outcomes."""
    outcomes: list[PolicyOutcome] = []
    policy_sets = (sentinel or {}).get("data") or {}
    for policy_set in policy_sets.values():
        for entry in policy_set.get("policies") or []:
            policy = entry.get("policy") or {}
            if isinstance(policy, str):
                name, level = policy, "advisory"
            else:
                name = policy.get("name", "")
                level = policy.get("enforcement-level", "advisory")

            if entry.get("error"):
                outcome = "errored"
            elif entry.get("result"):
                outcome = "passed"
            else:
                outcome = "failed"

            outcomes.append(
                PolicyOutcome(
                    policy_name=name,
                    enforcement_level=level,
                    outcome=outcome,
                    description=entry.get("error") or None,
                )
            )
    return outcomes


def _legacy_total(result: dict[str, Any], outcomes: list[PolicyOutcome]) -> int | None:
    """Upstream policy total of a check result, or None when it cannot be stated.

    ``passed`` + ``total-failed`` leaves errored policies out, so it is only a
    total when the result reports an errored count or no policy errored.
    """
    if "passed" not in result or "total-failed" not in result:
        return None
    total = int(result["passed"]) + int(result["total-failed"])
    if "errored" in result:
        return total + int(result["errored"])
    if any(outcome.outcome == "errored" for outcome in outcomes):
        return None
    return total


class TFCRunGateway(BaseHTTPClient):
    """RunGateway implementation backed by the HCP Terraform API."""

    def __init__(
        self,
        token: str | None,
        *,
        hostname: str = DEFAULT_HOSTNAME,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(f"https://{hostname}/api/v2", timeout=timeout, transport=transport)
        self._token = token
        self._user_agent = user_agent

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["User-Agent"] = self._user_agent
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def read_run(self, run_id: str) -> RunSnapshot:
        try:
            body = await self.get(f"/runs/{run_id}", params={"include": "policy_checks"})
        except NotFoundError as exc:
            raise RunNotFoundError(run_id) from exc

        data = body["data"]
        workspace_ids = _relationship_ids(data, "workspace")
        check_ids = _relationship_ids(data, "policy-checks")
        return RunSnapshot(
            id=data["id"],
            status=(data.get("attributes") or {}).get("status", ""),
            workspace_id=workspace_ids[0] if workspace_ids else None,
            # The most recent check is listed last.
            policy_check_id=check_ids[-1] if check_ids else None,
        )

    async def list_evaluation_stages(self, run_id: str) -> list[TaskStage]:
        try:
            body = await self.get(f"/runs/{run_id}/task-stages")
        except NotFoundError:
            # Older Terraform Enterprise releases have no task-stage endpoint.
            logger.debug("task_stages_unavailable", run_id=run_id)
            return []

        stages = [_parse_task_stage(item) for item in body.get("data") or []]
        return [stage for stage in stages if stage.policy_evaluation_ids]

    async def read_stage_evaluation(self, run_id: str, stage_id: str) -> ModernEvaluation:
        body = await self.get(
            f"/task-stages/{stage_id}",
            params={"include": "policy_evaluations"},
        )
        evaluations = [
            item for item in body.get("included") or [] if item.get("type") == "policy-evaluations"
        ]
        if not evaluations:
            raise NotFoundError("task stage has no policy evaluation", {"stage_id": stage_id})

        sentinel = [
            item
            for item in evaluations
            if (item.get("attributes") or {}).get("policy-kind", "sentinel") == "sentinel"
        ]
        evaluation = (sentinel or evaluations)[0]
        attributes = evaluation.get("attributes") or {}

        outcomes_body = await self.get(
            f"/policy-evaluations/{evaluation['id']}/policy-set-outcomes",
            params={"page[size]": OUTCOMES_PAGE_SIZE},
        )
        policy_set_outcomes = []
        for item in outcomes_body.get("data") or []:
            set_attributes = item.get("attributes") or {}
            policy_set_outcomes.append(
                PolicySetOutcome(
                    policy_set_name=set_attributes.get("policy-set-name", ""),
                    result_count=_parse_result_count(set_attributes.get("result-count")),
                    outcomes=tuple(
                        PolicyOutcome(
                            policy_name=outcome.get("policy_name", ""),
                            enforcement_level=outcome.get("enforcement_level", ""),
                            outcome=outcome.get("status", ""),
                            description=outcome.get("description") or None,
                        )
                        for outcome in set_attributes.get("outcomes") or []
                    ),
                )
            )

        return ModernEvaluation(
            run_id=run_id,
            stage_id=stage_id,
            evaluation_id=evaluation["id"],
            status=attributes.get("status", ""),
            result_count=_parse_result_count(attributes.get("result-count")),
            policy_set_outcomes=tuple(policy_set_outcomes),
        )

    async def read_legacy_check(self, run_id: str, check_id: str) -> LegacyCheck:
        body = await self.get(f"/policy-checks/{check_id}")
        attributes = body["data"].get("attributes") or {}
        result = attributes.get("result") or {}

        outcomes = _parse_sentinel_outcomes(result.get("sentinel"))
        return LegacyCheck(
            run_id=run_id,
            check_id=check_id,
            status=attributes.get("status", ""),
            outcomes=tuple(outcomes),
            total=_legacy_total(result, outcomes),
        )

    async def override_stage(self, stage_id: str, comment: str) -> TaskStage:
        body = await self.post(
            f"/task-stages/{stage_id}/actions/override",
            json={"comment": comment},
        )
        if not body.get("data"):
            return TaskStage(id=stage_id, stage="", status="")
        return _parse_task_stage(body["data"])

    async def override_legacy_check(self, check_id: str) -> str:
        body = await self.post(f"/policy-checks/{check_id}/actions/override")
        return ((body.get("data") or {}).get("attributes") or {}).get("status", "overridden")

    async def add_comment(self, run_id: str, body: str) -> None:
        await self.post(
            f"/runs/{run_id}/comments",
            json={"data": {"type": "comments", "attributes": {"body": body}}},
        )
