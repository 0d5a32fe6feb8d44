"""
tfci-policy command line.

Usage:
    tfci-policy [global options] policy show --run-id RUN [--no-wait]
    tfci-policy [global options] policy override --run-id RUN --justification TEXT
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, Sequence

from tfci_policy.cli.policy import OUTPUT_FORMATS, policy_override_command, policy_show_command
from tfci_policy.config.settings import Settings, get_settings
from tfci_policy.logging import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tfci-policy",
        description="Sentinel policy results and overrides for HCP Terraform runs",
    )
    parser.add_argument(
        "--hostname",
        help='Terraform Enterprise hostname (default: "app.terraform.io", env TFCI_HOSTNAME)',
    )
    parser.add_argument(
        "--token",
        help="API token (default: TFCI_TOKEN or TF_API_TOKEN environment variable)",
    )
    parser.add_argument("--organization", help="HCP Terraform organization name")
    parser.add_argument("--log-level", help="Log level (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command")

    policy_parser = subparsers.add_parser("policy", help="Sentinel policy operations")
    policy_subparsers = policy_parser.add_subparsers(dest="policy_command")

    show_parser = policy_subparsers.add_parser(
        "show",
        help="Retrieve Sentinel policy evaluation results for a run",
    )
    show_parser.add_argument("--run-id", required=True, help="Run ID to check policies for")
    show_parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Fail immediately if policies are not yet evaluated (default: wait with retry)",
    )
    show_parser.add_argument("--output", choices=OUTPUT_FORMATS, default="text", help="Output format")

    override_parser = policy_subparsers.add_parser(
        "override",
        help="Override mandatory policy failures with a justification",
    )
    override_parser.add_argument("--run-id", required=True, help="Run ID to override")
    override_parser.add_argument(
        "--justification",
        required=True,
        help="Reason for the override (at least 10 characters), recorded as a run comment",
    )
    override_parser.add_argument(
        "--timeout",
        type=float,
        help="Seconds to wait for the override to complete (default: TFCI_WAIT_DEADLINE)",
    )
    override_parser.add_argument(
        "--output", choices=OUTPUT_FORMATS, default="text", help="Output format"
    )

    return parser


def resolve_settings(args: argparse.Namespace) -> Settings:
    """Apply global command line options on top of environment settings."""
    overrides: dict[str, Any] = {
        key: value
        for key, value in {
            "hostname": args.hostname,
            "token": args.token,
            "organization": args.organization,
            "log_level": args.log_level,
        }.items()
        if value
    }
    settings = get_settings()
    return settings.model_copy(update=overrides) if overrides else settings


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command != "policy" or not getattr(args, "policy_command", None):
        parser.print_help()
        sys.exit(2)

    settings = resolve_settings(args)
    configure_logging(settings.log_level)

    if args.policy_command == "show":
        sys.exit(
            policy_show_command(
                args.run_id,
                no_wait=args.no_wait,
                output_format=args.output,
                settings=settings,
            )
        )

    if args.policy_command == "override":
        sys.exit(
            policy_override_command(
                args.run_id,
                args.justification,
                timeout=args.timeout,
                output_format=args.output,
                settings=settings,
            )
        )


if __name__ == "__main__":
    main()
