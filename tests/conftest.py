"""Root test configuration."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest
import structlog

from tfci_policy.core.errors import RunNotFoundError
from tfci_policy.gateway.base import (
    LegacyCheck,
    ModernEvaluation,
    RunSnapshot,
    TaskStage,
)
from tfci_policy.policy.waiter import BackoffConfig


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def _next(sequence: list[Any]) -> Any:
    """Return the next scripted response; the last one repeats forever."""
    item = sequence.pop(0) if len(sequence) > 1 else sequence[0]
    if isinstance(item, Exception):
        raise item
    return item


class FakeRunGateway:
    """In-memory RunGateway with scripted responses and a call log."""

    def __init__(self) -> None:
        self.runs: dict[str, list[Any]] = {}
        self.stages: dict[str, list[Any]] = {}
        self.stage_evaluations: dict[str, list[Any]] = {}
        self.legacy_checks: dict[str, list[Any]] = {}
        self.comment_error: Exception | None = None
        self.comment_delay = 0.0
        self.legacy_override_status = "overridden"
        self.comments: list[tuple[str, str]] = []
        self.calls: list[tuple[str, str]] = []

    def set_run(self, run_id: str, *statuses: str, policy_check_id: str | None = None) -> None:
        self.runs[run_id] = [
            RunSnapshot(
                id=run_id,
                status=status,
                workspace_id="ws-abc123",
                policy_check_id=policy_check_id,
            )
            for status in statuses
        ]

    def set_stage(self, run_id: str, stage_id: str, *evaluations: ModernEvaluation) -> None:
        self.stages[run_id] = [
            [
                TaskStage(
                    id=stage_id,
                    stage="post_plan",
                    status="awaiting_override",
                    policy_evaluation_ids=("poleval-abc123",),
                )
            ]
        ]
        self.stage_evaluations[stage_id] = list(evaluations)

    def set_legacy_check(self, check_id: str, *checks: LegacyCheck) -> None:
        self.legacy_checks[check_id] = list(checks)

    @property
    def mutating_calls(self) -> list[tuple[str, str]]:
        return [
            call
            for call in self.calls
            if call[0] in {"override_stage", "override_legacy_check", "add_comment"}
        ]

    async def read_run(self, run_id: str) -> RunSnapshot:
        self.calls.append(("read_run", run_id))
        if run_id not in self.runs:
            raise RunNotFoundError(run_id)
        return _next(self.runs[run_id])

    async def list_evaluation_stages(self, run_id: str) -> list[TaskStage]:
        self.calls.append(("list_evaluation_stages", run_id))
        if run_id not in self.stages:
            return []
        return _next(self.stages[run_id])

    async def read_stage_evaluation(self, run_id: str, stage_id: str) -> ModernEvaluation:
        self.calls.append(("read_stage_evaluation", stage_id))
        return _next(self.stage_evaluations[stage_id])

    async def read_legacy_check(self, run_id: str, check_id: str) -> LegacyCheck:
        self.calls.append(("read_legacy_check", check_id))
        return _next(self.legacy_checks[check_id])

    async def override_stage(self, stage_id: str, comment: str) -> TaskStage:
        self.calls.append(("override_stage", stage_id))
        return TaskStage(id=stage_id, stage="post_plan", status="overridden")

    async def override_legacy_check(self, check_id: str) -> str:
        self.calls.append(("override_legacy_check", check_id))
        return self.legacy_override_status

    async def add_comment(self, run_id: str, body: str) -> None:
        self.calls.append(("add_comment", run_id))
        if self.comment_delay:
            await asyncio.sleep(self.comment_delay)
        if self.comment_error is not None:
            raise self.comment_error
        self.comments.append((run_id, body))


@pytest.fixture
def gateway() -> FakeRunGateway:
    return FakeRunGateway()


@pytest.fixture
def fast_backoff() -> BackoffConfig:
    """Near-zero backoff so polling tests finish quickly."""
    return BackoffConfig(floor=0.001, cap=0.005, deadline=2.0)


@pytest.fixture
def short_deadline() -> BackoffConfig:
    return BackoffConfig(floor=0.001, cap=0.005, deadline=0.05)
