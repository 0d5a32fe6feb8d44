"""Sentinel policy evaluation and override tooling for HCP Terraform runs."""

__version__ = "0.1.0"
