"""
tfci-policy configuration.

Pydantic-based settings read from TFCI_* environment variables and .env files.
"""

from tfci_policy.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
