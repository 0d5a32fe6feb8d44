"""Core modules for tfci-policy - centralized error definitions."""

from tfci_policy.core.errors import (
    ConfigurationError,
    ExitCode,
    GatewayError,
    InvalidInputError,
    InvalidJustificationError,
    InvalidRunIDError,
    InvalidRunStatusError,
    NoPolicyEvaluationError,
    NormalizationError,
    NotFoundError,
    OverridePartialSuccessError,
    OverrideTimeoutError,
    PermissionDeniedError,
    PolicyPendingError,
    RunNotFoundError,
    RunTerminatedError,
    TFCIPolicyError,
    TransientError,
    WaitTimeoutError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "TFCIPolicyError",
    "ConfigurationError",
    "InvalidInputError",
    "InvalidRunIDError",
    "InvalidJustificationError",
    "NotFoundError",
    "RunNotFoundError",
    "NoPolicyEvaluationError",
    "InvalidRunStatusError",
    "PolicyPendingError",
    "PermissionDeniedError",
    "GatewayError",
    "TransientError",
    "NormalizationError",
    "WaitTimeoutError",
    "OverrideTimeoutError",
    "RunTerminatedError",
    "OverridePartialSuccessError",
    "main_with_error_handling",
    "format_error_message",
]
