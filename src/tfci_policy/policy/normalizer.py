"""
Policy evaluation normalizer.

Turns a raw modern (task-stage) or legacy (policy-check) evaluation into a
PolicyEvaluation. Totals and the override flag are always derived from the
individual counts; an upstream total is only compared against them.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from pydantic import ValidationError

from tfci_policy.core.errors import NormalizationError
from tfci_policy.gateway.base import LegacyCheck, ModernEvaluation, RawEvaluation
from tfci_policy.policy.models import (
    EnforcementLevel,
    PolicyDetail,
    PolicyDetailStatus,
    PolicyEvaluation,
    PolicyStatus,
)

logger = structlog.get_logger()

UPSTREAM_STATUS_MAP: dict[str, PolicyStatus] = {
    "passed": PolicyStatus.passed,
    "failed": PolicyStatus.failed,
    "soft_failed": PolicyStatus.failed,
    "hard_failed": PolicyStatus.failed,
    "overridden": PolicyStatus.failed,
    "errored": PolicyStatus.errored,
    "canceled": PolicyStatus.errored,
    "force_canceled": PolicyStatus.errored,
    "unreachable": PolicyStatus.errored,
    "pending": PolicyStatus.pending,
    "queued": PolicyStatus.pending,
    "managed_queued": PolicyStatus.pending,
    "running": PolicyStatus.running,
}

MANDATORY_LEVELS = frozenset({"mandatory", "hard-mandatory", "soft-mandatory"})


@dataclass
class _Counts:
    passed: int = 0
    advisory_failed: int = 0
    mandatory_failed: int = 0
    errored: int = 0

    @property
    def total(self) -> int:
        return self.passed + self.advisory_failed + self.mandatory_failed + self.errored


def map_upstream_status(status: str) -> PolicyStatus:
    """Map an API evaluation or check status onto the canonical status set."""
    try:
        return UPSTREAM_STATUS_MAP[status]
    except KeyError:
        raise NormalizationError(
            f"unrecognized policy status '{status}'", {"status": status}
        ) from None


def is_mandatory(enforcement_level: str) -> bool:
    return enforcement_level.lower() in MANDATORY_LEVELS


def normalize(raw: RawEvaluation) -> PolicyEvaluation:
    """Normalize either raw representation into a validated PolicyEvaluation."""
    if raw.kind == "modern":
        return _normalize_modern(raw)
    if raw.kind == "legacy":
        return _normalize_legacy(raw)
    raise NormalizationError(f"unsupported evaluation format '{raw.kind}'")


def _normalize_modern(raw: ModernEvaluation) -> PolicyEvaluation:
    summary = raw.result_count
    counts = _Counts(
        passed=summary.passed,
        advisory_failed=summary.advisory_failed,
        mandatory_failed=summary.mandatory_failed,
        errored=summary.errored,
    )
    _check_upstream_total(raw.run_id, summary.total, counts)

    failed: list[PolicyDetail] = []
    for policy_set in raw.policy_set_outcomes:
        if policy_set.result_count.mandatory_failed == 0:
            continue
        for outcome in policy_set.outcomes:
            if outcome.outcome.lower() != "failed" or not is_mandatory(outcome.enforcement_level):
                continue
            failed.append(_detail(raw.run_id, outcome.policy_name, outcome.description))

    return _build(
        raw.run_id,
        counts,
        failed,
        raw.status,
        policy_stage_id=raw.stage_id,
    )


def _normalize_legacy(raw: LegacyCheck) -> PolicyEvaluation:
    counts = _Counts()
    failed: list[PolicyDetail] = []

    for outcome in raw.outcomes:
        result = outcome.outcome.lower()
        if result == "passed":
            counts.passed += 1
        elif result == "errored":
            counts.errored += 1
        elif result == "failed":
            if is_mandatory(outcome.enforcement_level):
                counts.mandatory_failed += 1
                failed.append(_detail(raw.run_id, outcome.policy_name, outcome.description))
            else:
                counts.advisory_failed += 1
        else:
            raise NormalizationError(
                f"unrecognized policy outcome '{outcome.outcome}'",
                {"run_id": raw.run_id, "policy_name": outcome.policy_name},
            )

    _check_upstream_total(raw.run_id, raw.total, counts)

    return _build(
        raw.run_id,
        counts,
        failed,
        raw.status,
        policy_check_id=raw.check_id,
    )


def _detail(run_id: str, policy_name: str, description: str | None) -> PolicyDetail:
    try:
        return PolicyDetail(
            policy_name=policy_name,
            enforcement_level=EnforcementLevel.mandatory,
            status=PolicyDetailStatus.failed,
            description=description,
        )
    except ValidationError as exc:
        raise NormalizationError(
            "invalid policy detail", {"run_id": run_id, "policy_name": policy_name}
        ) from exc


def _check_upstream_total(run_id: str, upstream_total: int | None, counts: _Counts) -> None:
    if upstream_total is not None and upstream_total != counts.total:
        logger.warning(
            "policy_total_mismatch",
            run_id=run_id,
            upstream_total=upstream_total,
            derived_total=counts.total,
        )


def _build(
    run_id: str,
    counts: _Counts,
    failed: list[PolicyDetail],
    upstream_status: str,
    *,
    policy_stage_id: str | None = None,
    policy_check_id: str | None = None,
) -> PolicyEvaluation:
    status = map_upstream_status(upstream_status)
    try:
        return PolicyEvaluation(
            run_id=run_id,
            policy_stage_id=policy_stage_id,
            policy_check_id=policy_check_id,
            total_count=counts.total,
            passed_count=counts.passed,
            advisory_failed_count=counts.advisory_failed,
            mandatory_failed_count=counts.mandatory_failed,
            errored_count=counts.errored,
            failed_policies=tuple(failed),
            status=status,
            requires_override=counts.mandatory_failed > 0,
        )
    except ValidationError as exc:
        logger.error("policy_normalization_failed", run_id=run_id, error=str(exc))
        raise NormalizationError(
            "policy evaluation failed validation", {"run_id": run_id}
        ) from exc
