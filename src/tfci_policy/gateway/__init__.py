from tfci_policy.gateway.base import (
    LegacyCheck,
    ModernEvaluation,
    PolicyOutcome,
    PolicySetOutcome,
    RawEvaluation,
    ResultCount,
    RunGateway,
    RunSnapshot,
    TaskStage,
)
from tfci_policy.gateway.tfc import TFCRunGateway

__all__ = [
    "LegacyCheck",
    "ModernEvaluation",
    "PolicyOutcome",
    "PolicySetOutcome",
    "RawEvaluation",
    "ResultCount",
    "RunGateway",
    "RunSnapshot",
    "TaskStage",
    "TFCRunGateway",
]
