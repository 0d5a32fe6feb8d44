"""
Unified error handling for tfci-policy.

Every failure the policy core can report is a ``TFCIPolicyError`` subclass
carrying a message, a details mapping and the exit code the CLI returns.

Exit Codes:
- 0: Success
- 1: Warning (override accepted, audit comment missing)
- 3: Pending (evaluation still in progress and waiting was disabled)
- 10: Configuration error
- 11: Gateway error (HCP Terraform API failure)
- 12: Validation error (malformed run ID, short justification)
- 13: Not found (run or policy evaluation)
- 14: Invalid state (run status does not allow the operation)
- 15: Permission denied
- 16: Timeout
- 17: Run terminated (discarded, canceled or errored while waiting)
- 18: Data error (upstream payload failed normalization)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Callable, TypeVar

import structlog

if TYPE_CHECKING:
    from tfci_policy.policy.models import PolicyOverride

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    WARNING = 1
    PENDING = 3
    CONFIG_ERROR = 10
    GATEWAY_ERROR = 11
    VALIDATION_ERROR = 12
    NOT_FOUND = 13
    INVALID_STATE = 14
    PERMISSION_DENIED = 15
    TIMEOUT = 16
    RUN_TERMINATED = 17
    DATA_ERROR = 18
    UNKNOWN_ERROR = 127


class TFCIPolicyError(Exception):
    """Base exception for tfci-policy errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    status: str = "error"
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(TFCIPolicyError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


class InvalidInputError(TFCIPolicyError):
    """Raised for caller input that fails validation before any API call."""

    exit_code = ExitCode.VALIDATION_ERROR
    status = "invalid_input"


class InvalidRunIDError(InvalidInputError):
    def __init__(self, run_id: str):
        super().__init__("invalid run ID format", {"run_id": run_id})


class InvalidJustificationError(InvalidInputError):
    def __init__(self, length: int, minimum: int):
        super().__init__(
            f"justification must be at least {minimum} characters",
            {"length": length, "minimum": minimum},
        )


class NotFoundError(TFCIPolicyError):
    """Raised when a gateway resource does not exist."""

    exit_code = ExitCode.NOT_FOUND
    status = "not_found"


class RunNotFoundError(NotFoundError):
    def __init__(self, run_id: str):
        super().__init__("run not found", {"run_id": run_id})


class NoPolicyEvaluationError(NotFoundError):
    def __init__(self, run_id: str):
        super().__init__("run has no policy evaluation", {"run_id": run_id})


class InvalidRunStatusError(TFCIPolicyError):
    """Raised when the run status does not permit the requested operation."""

    exit_code = ExitCode.INVALID_STATE
    status = "invalid_state"

    def __init__(self, run_id: str, observed: str, expected: str):
        super().__init__(
            f"run status '{observed}' does not allow this operation, expected '{expected}'",
            {"run_id": run_id, "observed": observed, "expected": expected},
        )
        self.observed = observed
        self.expected = expected


class PolicyPendingError(TFCIPolicyError):
    """Policy evaluation is still in progress and the caller asked not to wait."""

    exit_code = ExitCode.PENDING
    status = "pending"

    def __init__(self, run_id: str, upstream_status: str | None = None):
        details: dict[str, Any] = {"run_id": run_id}
        if upstream_status:
            details["upstream_status"] = upstream_status
        super().__init__("policy evaluation still in progress", details)


class PermissionDeniedError(TFCIPolicyError):
    """Raised when the gateway rejects the token for the requested operation."""

    exit_code = ExitCode.PERMISSION_DENIED
    status = "permission_denied"


class GatewayError(TFCIPolicyError):
    """Raised when the remote API fails in a way that should not be retried."""

    exit_code = ExitCode.GATEWAY_ERROR
    status = "gateway_error"


class TransientError(GatewayError):
    """Rate limiting, server-side and network errors that polling may retry."""


class NormalizationError(TFCIPolicyError):
    """Raised when an upstream payload cannot be turned into a consistent result."""

    exit_code = ExitCode.DATA_ERROR
    status = "data_error"


class WaitTimeoutError(TFCIPolicyError):
    """The wait deadline elapsed without reaching a terminal state."""

    exit_code = ExitCode.TIMEOUT
    status = "timeout"


class OverrideTimeoutError(WaitTimeoutError):
    """The override was submitted but the run never left its pre-override status."""

    override_complete = False

    def __init__(self, run_id: str, last_status: str | None, reason: str | None = None):
        details: dict[str, Any] = {"run_id": run_id, "last_status": last_status}
        if reason:
            details["reason"] = reason
        super().__init__("timed out waiting for override to complete", details)
        self.last_status = last_status


class RunTerminatedError(TFCIPolicyError):
    """The run was discarded, canceled or errored while waiting."""

    exit_code = ExitCode.RUN_TERMINATED
    status = "run_terminated"

    def __init__(
        self,
        run_id: str,
        run_status: str,
        override: PolicyOverride | None = None,
    ):
        super().__init__(
            f"run entered terminal status '{run_status}'",
            {"run_id": run_id, "run_status": run_status},
        )
        self.run_status = run_status
        self.override = override


class OverridePartialSuccessError(TFCIPolicyError):
    """Override accepted but the justification comment could not be attached."""

    exit_code = ExitCode.WARNING
    status = "partial_success"

    def __init__(self, override: PolicyOverride, cause: Exception):
        super().__init__(
            "override applied but the justification comment was not attached",
            {"run_id": override.run_id, "cause": str(cause)},
        )
        self.override = override
        self.cause = cause


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI command functions that provides unified error handling.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - TFCIPolicyError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except TFCIPolicyError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=e.exit_code,
                        **e.details,
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=ExitCode.UNKNOWN_ERROR,
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: TFCIPolicyError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
