"""
CLI commands for tfci-policy.
"""

from tfci_policy.cli.policy import policy_override_command, policy_show_command

__all__ = [
    "policy_show_command",
    "policy_override_command",
]
