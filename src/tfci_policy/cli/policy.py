"""
Policy commands: show evaluation results and override mandatory failures.

Exit codes follow tfci_policy.core.errors.ExitCode: 0 on success, 1 when an
override went through without its justification comment, 3 when the
evaluation is still pending with --no-wait, and the error-specific codes
otherwise.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

from tfci_policy.cli.ux import console, error, header, info, print_key_value, success, warning
from tfci_policy.config.settings import Settings, get_settings
from tfci_policy.core.errors import (
    ConfigurationError,
    ExitCode,
    OverridePartialSuccessError,
    RunTerminatedError,
    TFCIPolicyError,
    format_error_message,
    main_with_error_handling,
)
from tfci_policy.gateway.tfc import TFCRunGateway
from tfci_policy.logging import bind_context
from tfci_policy.policy.models import (
    EnforcementLevel,
    GetPolicyEvaluationOptions,
    OverridePolicyOptions,
    PolicyEvaluation,
    PolicyOverride,
)
from tfci_policy.policy.service import PolicyService

OUTPUT_FORMATS = ("text", "json")


def build_policy_service(settings: Settings) -> PolicyService:
    """Create a PolicyService talking to the configured HCP Terraform host."""
    if not settings.token:
        raise ConfigurationError(
            "an API token is required (set TFCI_TOKEN or TF_API_TOKEN, or pass --token)"
        )
    gateway = TFCRunGateway(
        settings.token,
        hostname=settings.hostname,
        timeout=settings.http_timeout,
    )
    return PolicyService(gateway, backoff=settings.backoff())


def run_url(settings: Settings, run_id: str) -> str | None:
    if not settings.organization:
        return None
    return f"https://{settings.hostname}/app/{settings.organization}/runs/{run_id}"


def format_json(command: str, status: str, run_id: str, **fields: Any) -> str:
    """Format a command result as JSON."""
    output: dict[str, Any] = {
        "command": command,
        "status": status,
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **fields,
    }
    return json.dumps(output, indent=2, sort_keys=True, default=str)


def _error_fields(exc: TFCIPolicyError) -> dict[str, Any]:
    return {"error": exc.message, "details": exc.details}


@main_with_error_handling()
def policy_show_command(
    run_id: str,
    *,
    no_wait: bool = False,
    output_format: str = "text",
    settings: Settings | None = None,
    service: PolicyService | None = None,
) -> int:
    """Retrieve and display Sentinel policy evaluation results for a run."""
    settings = settings or get_settings()
    bind_context(command="policy show", run_id=run_id)

    try:
        service = service or build_policy_service(settings)
        evaluation = asyncio.run(
            service.get_policy_evaluation(
                GetPolicyEvaluationOptions(run_id=run_id, no_wait=no_wait)
            )
        )
    except TFCIPolicyError as exc:
        if output_format == "json":
            print(format_json("policy show", exc.status, run_id, **_error_fields(exc)))
        else:
            error(f"error retrieving policy evaluation for run '{run_id}': {format_error_message(exc)}")
        raise

    if output_format == "json":
        print(
            format_json(
                "policy show",
                "success",
                run_id,
                payload=evaluation.model_dump(mode="json"),
            )
        )
    else:
        _display_evaluation(evaluation, run_url(settings, run_id))
    return ExitCode.SUCCESS


@main_with_error_handling()
def policy_override_command(
    run_id: str,
    justification: str,
    *,
    timeout: float | None = None,
    output_format: str = "text",
    settings: Settings | None = None,
    service: PolicyService | None = None,
) -> int:
    """Override mandatory policy failures on a run awaiting a policy decision."""
    settings = settings or get_settings()
    bind_context(command="policy override", run_id=run_id)

    try:
        service = service or build_policy_service(settings)
        override = asyncio.run(
            service.override_policy(
                OverridePolicyOptions(run_id=run_id, justification=justification),
                timeout=timeout,
            )
        )
    except (OverridePartialSuccessError, RunTerminatedError) as exc:
        payload = exc.override.model_dump(mode="json") if exc.override else None
        if output_format == "json":
            print(
                format_json(
                    "policy override",
                    exc.status,
                    run_id,
                    payload=payload,
                    **_error_fields(exc),
                )
            )
        else:
            if exc.override is not None:
                _display_override(exc.override, run_url(settings, run_id))
            warning(format_error_message(exc))
        raise
    except TFCIPolicyError as exc:
        if output_format == "json":
            print(
                format_json("policy override", exc.status, run_id, **_error_fields(exc))
            )
        else:
            error(f"error overriding policy for run '{run_id}': {format_error_message(exc)}")
        raise

    if output_format == "json":
        print(
            format_json(
                "policy override",
                "success",
                run_id,
                payload=override.model_dump(mode="json"),
            )
        )
    else:
        _display_override(override, run_url(settings, run_id))
    return ExitCode.SUCCESS


def _display_evaluation(evaluation: PolicyEvaluation, url: str | None) -> None:
    header(f"Policy Evaluation: {evaluation.run_id}")
    console.print(f"  [cyan]Status:[/cyan] {evaluation.status}")
    console.print(f"  [cyan]Total Policies:[/cyan] {evaluation.total_count}")
    console.print(f"  [success]Passed:[/success] {evaluation.passed_count}")
    console.print(f"  [warning]Failed (Advisory):[/warning] {evaluation.advisory_failed_count}")
    console.print(f"  [error]Failed (Mandatory):[/error] {evaluation.mandatory_failed_count}")
    console.print(f"  [muted]Errored:[/muted] {evaluation.errored_count}")

    mandatory = [
        policy
        for policy in evaluation.failed_policies
        if policy.enforcement_level == EnforcementLevel.mandatory
    ]
    if mandatory:
        console.print()
        console.print("[bold]Failed Mandatory Policies:[/bold]")
        for policy in mandatory:
            console.print(f"  [muted]•[/muted] {policy.policy_name} ({policy.enforcement_level})")
            if policy.description:
                console.print(f"    [muted]{policy.description}[/muted]")

    console.print()
    if evaluation.requires_override:
        info("Override required: a policy override is needed to proceed")
    else:
        success("All policies passed or only advisory policies failed")

    if url:
        console.print(f"[muted]View in HCP Terraform:[/muted] {url}")


def _display_override(override: PolicyOverride, url: str | None) -> None:
    header(f"Policy Override: {override.run_id}")
    print_key_value(
        {
            "Status": f"{override.initial_status} → {override.final_status}",
            "Justification": override.justification,
            "Timestamp": override.timestamp.isoformat(),
        }
    )
    console.print()
    if override.override_complete:
        success("Override complete, run can proceed")
    else:
        warning(f"Override did not complete (run status: {override.final_status})")

    if url:
        console.print(f"[muted]View in HCP Terraform:[/muted] {url}")
