"""
Sentinel policy evaluation and override operations.

Normalizes modern (task-stage) and legacy (policy-check) evaluations into one
shape and drives overrides through to a settled run status.
"""

from tfci_policy.policy.detector import APIFormat, FormatDetection, detect_format
from tfci_policy.policy.models import (
    GetPolicyEvaluationOptions,
    OverridePolicyOptions,
    PolicyDetail,
    PolicyEvaluation,
    PolicyOverride,
)
from tfci_policy.policy.normalizer import normalize
from tfci_policy.policy.service import PolicyService
from tfci_policy.policy.waiter import (
    BackoffConfig,
    ProbeResult,
    WaitEngine,
    WaitInterrupted,
    WaitResult,
    WaitState,
)

__all__ = [
    "APIFormat",
    "BackoffConfig",
    "FormatDetection",
    "GetPolicyEvaluationOptions",
    "OverridePolicyOptions",
    "PolicyDetail",
    "PolicyEvaluation",
    "PolicyOverride",
    "PolicyService",
    "ProbeResult",
    "WaitEngine",
    "WaitInterrupted",
    "WaitResult",
    "WaitState",
    "detect_format",
    "normalize",
]
