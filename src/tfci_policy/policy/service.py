"""
Policy service: retrieval of normalized policy evaluations and policy overrides.

Both operations hide whether a run is evaluated through task stages (modern
API) or through a policy check (legacy API), and both may block in the wait
engine until HCP Terraform reaches a settled state.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog

from tfci_policy.core.errors import (
    GatewayError,
    InvalidRunStatusError,
    NoPolicyEvaluationError,
    OverridePartialSuccessError,
    OverrideTimeoutError,
    PolicyPendingError,
    RunTerminatedError,
    TFCIPolicyError,
    WaitTimeoutError,
)
from tfci_policy.gateway.base import RawEvaluation, RunGateway, RunSnapshot
from tfci_policy.policy.detector import APIFormat, FormatDetection, detect_format
from tfci_policy.policy.models import (
    AWAITING_DECISION,
    OVERRIDE_SUCCESS_STATUSES,
    GetPolicyEvaluationOptions,
    OverrideFinalStatus,
    OverridePolicyOptions,
    PolicyEvaluation,
    PolicyOverride,
)
from tfci_policy.policy.normalizer import normalize
from tfci_policy.policy.waiter import (
    BackoffConfig,
    ProbeResult,
    WaitEngine,
    WaitInterrupted,
    WaitState,
)

logger = structlog.get_logger()

# Run statuses in which policy evaluation has not been attached yet.
PRE_POLICY_RUN_STATUSES = frozenset(
    {
        "pending",
        "fetching",
        "fetching_completed",
        "queuing",
        "plan_queued",
        "pre_plan_running",
        "pre_plan_completed",
        "planning",
        "planned",
        "cost_estimating",
        "cost_estimated",
        "post_plan_running",
    }
)

UPSTREAM_PENDING_STATUSES = frozenset({"pending", "queued", "managed_queued", "running"})

OVERRIDE_SUCCESS_RUN_STATUSES = frozenset(str(status) for status in OVERRIDE_SUCCESS_STATUSES)
OVERRIDE_TERMINATED_STATUSES = frozenset({"discarded", "errored", "canceled", "force_canceled"})

# Policy check statuses returned by a successful legacy override.
LEGACY_OVERRIDE_ACCEPTED_STATUSES = frozenset({"overridden", "passed"})

JUSTIFICATION_COMMENT_PREFIX = "Policy override justification:"


class PolicyService:
    """Retrieve and override Sentinel policy results for runs."""

    def __init__(
        self,
        gateway: RunGateway,
        *,
        backoff: BackoffConfig | None = None,
        wait_engine: WaitEngine | None = None,
    ) -> None:
        self._gateway = gateway
        self._waiter = wait_engine or WaitEngine(backoff)

    async def get_policy_evaluation(
        self,
        options: GetPolicyEvaluationOptions,
        *,
        cancel: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> PolicyEvaluation:
        """Return the normalized policy evaluation for a run.

        Waits for the evaluation to finish unless ``options.no_wait`` is set,
        in which case an unfinished evaluation raises ``PolicyPendingError``
        after a single probe.
        """
        options.validate()
        run_id = options.run_id
        log = logger.bind(run_id=run_id)
        last_upstream: dict[str, str] = {}

        async def probe() -> ProbeResult[PolicyEvaluation]:
            run = await self._gateway.read_run(run_id)
            detection = await detect_format(self._gateway, run)

            if detection.format == APIFormat.unknown:
                if run.status in PRE_POLICY_RUN_STATUSES:
                    last_upstream["status"] = run.status
                    return ProbeResult.pending(f"run status {run.status}")
                raise NoPolicyEvaluationError(run_id)

            raw = await self._read_raw(run, detection)
            if raw.status in UPSTREAM_PENDING_STATUSES:
                last_upstream["status"] = raw.status
                return ProbeResult.pending(f"policy evaluation {raw.status}")
            return ProbeResult.success(normalize(raw))

        result = await self._waiter.wait(
            probe,
            no_wait=options.no_wait,
            cancel=cancel,
            timeout=timeout,
            operation="get_policy_evaluation",
        )

        if result.state == WaitState.done and result.value is not None:
            log.info(
                "policy_evaluation_retrieved",
                status=str(result.value.status),
                total=result.value.total_count,
                mandatory_failed=result.value.mandatory_failed_count,
                attempts=result.attempts,
            )
            return result.value
        if result.state == WaitState.pending:
            raise PolicyPendingError(run_id, last_upstream.get("status"))
        raise WaitTimeoutError(
            "timed out waiting for policy evaluation",
            {"run_id": run_id, "reason": result.reason, "attempts": result.attempts},
        )

    async def override_policy(
        self,
        options: OverridePolicyOptions,
        *,
        cancel: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> PolicyOverride:
        """Override mandatory policy failures on a run awaiting a decision.

        ``cancel`` and ``timeout`` bound the whole call. No override is sent
        once either has fired.

        Raises ``OverridePartialSuccessError`` (carrying the override) when the
        override went through but the justification comment did not. Other
        errors raised after the override was sent report a failed comment in
        their details as ``comment_attached=False``.
        """
        options.validate()
        run_id = options.run_id
        log = logger.bind(run_id=run_id)
        deadline_at = self._waiter.deadline_at(timeout)

        async def bounded(call):
            return await self._waiter.bounded(call, deadline_at=deadline_at, cancel=cancel)

        try:
            run = await bounded(lambda: self._gateway.read_run(run_id))
            if run.status != AWAITING_DECISION:
                raise InvalidRunStatusError(run_id, run.status, AWAITING_DECISION)
            detection = await bounded(lambda: detect_format(self._gateway, run))
        except WaitInterrupted as exc:
            log.warning("policy_override_not_submitted", reason=exc.reason)
            raise WaitTimeoutError(
                "override not submitted",
                {"run_id": run_id, "reason": exc.reason, "override_submitted": False},
            ) from None

        initial_status = run.status
        if detection.format == APIFormat.unknown:
            raise NoPolicyEvaluationError(run_id)

        try:
            final_status = await bounded(lambda: self._submit_override(run_id, detection, options))
        except WaitInterrupted as exc:
            # The request may have reached the API before it was abandoned.
            raise OverrideTimeoutError(run_id, initial_status, exc.reason) from None

        comment_error: TFCIPolicyError | None = None
        try:
            await bounded(
                lambda: self._gateway.add_comment(
                    run_id, f"{JUSTIFICATION_COMMENT_PREFIX} {options.justification}"
                )
            )
        except WaitInterrupted as exc:
            comment_error = WaitTimeoutError(
                "justification comment abandoned", {"run_id": run_id, "reason": exc.reason}
            )
        except TFCIPolicyError as exc:
            comment_error = exc
        if comment_error is not None:
            log.warning("override_comment_failed", error=comment_error.message)

        if final_status is None:
            try:
                final_status = await self._await_override(run_id, cancel, deadline_at)
            except (OverrideTimeoutError, RunTerminatedError) as exc:
                _note_comment_failure(exc, comment_error)
                raise

        override = _build_override(options, detection, initial_status, final_status)
        log.info(
            "policy_override_finished",
            final_status=str(override.final_status),
            override_complete=override.override_complete,
        )

        if final_status not in OVERRIDE_SUCCESS_STATUSES:
            raise _note_comment_failure(
                RunTerminatedError(run_id, str(final_status), override), comment_error
            )
        if comment_error is not None:
            raise OverridePartialSuccessError(override, comment_error)
        return override

    async def _submit_override(
        self,
        run_id: str,
        detection: FormatDetection,
        options: OverridePolicyOptions,
    ) -> OverrideFinalStatus | None:
        """Send the override; return the final status when it is known immediately."""
        log = logger.bind(run_id=run_id)
        if detection.format == APIFormat.modern:
            assert detection.stage_id is not None
            stage = await self._gateway.override_stage(detection.stage_id, options.justification)
            log.info("policy_override_submitted", stage_id=stage.id, stage_status=stage.status)
            return None

        assert detection.check_id is not None
        check_status = await self._gateway.override_legacy_check(detection.check_id)
        log.info("policy_override_submitted", check_id=detection.check_id, check_status=check_status)
        if check_status not in LEGACY_OVERRIDE_ACCEPTED_STATUSES:
            raise GatewayError(
                f"policy check override not applied, check status '{check_status}'",
                {"run_id": run_id, "check_id": detection.check_id, "check_status": check_status},
            )
        return OverrideFinalStatus.policy_override

    async def _read_raw(self, run: RunSnapshot, detection: FormatDetection) -> RawEvaluation:
        if detection.format == APIFormat.modern:
            assert detection.stage_id is not None
            return await self._gateway.read_stage_evaluation(run.id, detection.stage_id)
        assert detection.check_id is not None
        return await self._gateway.read_legacy_check(run.id, detection.check_id)

    async def _await_override(
        self,
        run_id: str,
        cancel: asyncio.Event | None,
        deadline_at: float,
    ) -> OverrideFinalStatus:
        last_status: dict[str, str] = {"status": AWAITING_DECISION}

        async def probe() -> ProbeResult[OverrideFinalStatus]:
            run = await self._gateway.read_run(run_id)
            last_status["status"] = run.status
            if run.status in OVERRIDE_SUCCESS_RUN_STATUSES:
                return ProbeResult.success(OverrideFinalStatus(run.status))
            if run.status in OVERRIDE_TERMINATED_STATUSES:
                return ProbeResult.failure(run.status)
            return ProbeResult.pending(f"run status {run.status}")

        result = await self._waiter.wait(
            probe,
            cancel=cancel,
            deadline_at=deadline_at,
            operation="override_policy",
        )

        if result.state == WaitState.done and result.value is not None:
            return result.value
        if result.state == WaitState.failed:
            status = result.reason or "errored"
            if status in {"discarded", "errored"}:
                return OverrideFinalStatus(status)
            # Canceled runs have no representable final status.
            raise RunTerminatedError(run_id, status)
        raise OverrideTimeoutError(run_id, last_status.get("status"), result.reason)


def _note_comment_failure(
    error: TFCIPolicyError, comment_error: TFCIPolicyError | None
) -> TFCIPolicyError:
    if comment_error is not None:
        error.details["comment_attached"] = False
        error.details["comment_error"] = comment_error.message
    return error


def _build_override(
    options: OverridePolicyOptions,
    detection: FormatDetection,
    initial_status: str,
    final_status: OverrideFinalStatus,
) -> PolicyOverride:
    return PolicyOverride(
        run_id=options.run_id,
        policy_stage_id=detection.stage_id,
        policy_check_id=detection.check_id,
        justification=options.justification,
        initial_status=initial_status,
        final_status=final_status,
        override_complete=final_status in OVERRIDE_SUCCESS_STATUSES,
        timestamp=datetime.now(timezone.utc),
    )
