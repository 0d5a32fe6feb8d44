"""
API format detection.

A run is evaluated either through task stages (modern) or through a policy
check (legacy). Detection is repeated on every call because task stages can
appear after a run was first read.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

import structlog

from tfci_policy.gateway.base import RunGateway, RunSnapshot

logger = structlog.get_logger()

POLICY_STAGE = "post_plan"


class APIFormat(StrEnum):
    modern = "modern"
    legacy = "legacy"
    unknown = "unknown"


@dataclass(frozen=True)
class FormatDetection:
    format: APIFormat
    stage_id: str | None = None
    check_id: str | None = None


async def detect_format(gateway: RunGateway, run: RunSnapshot) -> FormatDetection:
    """Pick the policy evaluation representation that applies to ``run``."""
    stages = await gateway.list_evaluation_stages(run.id)
    if stages:
        preferred = [stage for stage in stages if stage.stage == POLICY_STAGE]
        stage = (preferred or stages)[0]
        logger.debug("policy_format_detected", run_id=run.id, format="modern", stage_id=stage.id)
        return FormatDetection(APIFormat.modern, stage_id=stage.id)

    if run.policy_check_id:
        logger.debug(
            "policy_format_detected",
            run_id=run.id,
            format="legacy",
            check_id=run.policy_check_id,
        )
        return FormatDetection(APIFormat.legacy, check_id=run.policy_check_id)

    return FormatDetection(APIFormat.unknown)
