#!/usr/bin/env python3
"""
mkwebuser command line.

Creates a system account, a fixed-size ext4 volume in its home, mounts the
volume, confines the account to it and restricts its login to sftp:

    mkwebuser --username alice --quota 500 --base /srv/users --mountbase /srv/mnt

Exit codes:
    0  success
    1  rejected before any side effect (validation, conflict, lock contention)
    2  failed, everything rolled back
    3  failed, rollback incomplete: residual resources need manual cleanup
"""

import argparse
import logging
import sys
from typing import List, Optional

import pydantic

from mkwebuser import __version__
from mkwebuser.config.settings import AppSettings, get_settings
from mkwebuser.errors import EXIT_REJECTED, EXIT_SUCCESS, failure_exit_code
from mkwebuser.gateway import PrivilegedGateway, SimulatedHost, SubprocessGateway
from mkwebuser.logging_config import configure_logging
from mkwebuser.provisioning import (
    ProvisioningEngine,
    ProvisionOutcome,
    ProvisionRequest,
    ProvisionResult,
)

logger = logging.getLogger(__name__)


def build_parser(settings: AppSettings) -> argparse.ArgumentParser:
    defaults = settings.provisioning
    parser = argparse.ArgumentParser(
        prog="mkwebuser",
        description="Provision an isolated, quota-limited, sftp-only user",
    )
    parser.add_argument(
        "-u", "--username",
        required=True,
        help="Name of the system account to create",
    )
    parser.add_argument(
        "-q", "--quota",
        type=int,
        default=defaults.default_quota_mib,
        help=f"Volume size in MiB (default: {defaults.default_quota_mib})",
    )
    parser.add_argument(
        "-b", "--base",
        default=defaults.default_base,
        help=f"Parent directory of the home directory (default: {defaults.default_base})",
    )
    parser.add_argument(
        "-m", "--mountbase",
        default=defaults.default_mount_base,
        help=f"Parent directory of the volume mount point (default: {defaults.default_mount_base})",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        default=defaults.resume,
        help="Converge an interrupted run instead of rejecting existing resources",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=defaults.timeout_seconds,
        help="Overall deadline in seconds, checked between steps",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Run against an in-memory host instead of the real system",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def _simulated(settings: AppSettings, request: ProvisionRequest):
    """In-memory host with the base directories in place, no locks or journal on disk."""
    host = SimulatedHost()
    host.makedirs(request.user_base)
    host.makedirs(request.mount_base)
    settings = settings.model_copy(
        update={"host": settings.host.model_copy(update={"lock_dir": None, "state_file": None})}
    )
    return host, settings


def report(result: ProvisionResult, request: ProvisionRequest) -> None:
    """Print the outcome for the operator."""
    if result.outcome == ProvisionOutcome.SUCCESS:
        print(
            f"[SUCCESS] User {{ name: {request.username} }}; "
            f"Userspace {{ name: volume; size: {request.quota} }}"
        )
        return

    print(f"[FAILED] {result.cause}", file=sys.stderr)
    if result.outcome == ProvisionOutcome.FAILED_AND_ROLLED_BACK:
        print("[ROLLED BACK] No resources were left behind", file=sys.stderr)
        return

    for error in result.rollback_errors:
        print(f"[ROLLBACK ERROR] {error}", file=sys.stderr)
    print("[MANUAL CLEANUP REQUIRED] Residual resources:", file=sys.stderr)
    for resource in result.residual_resources:
        print(f"  - {resource}", file=sys.stderr)


def main(
    argv: Optional[List[str]] = None,
    gateway: Optional[PrivilegedGateway] = None,
    settings: Optional[AppSettings] = None,
) -> int:
    try:
        settings = settings or get_settings()
    except pydantic.ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_REJECTED

    try:
        args = build_parser(settings).parse_args(argv)
    except SystemExit as e:
        # argparse exits 2 on usage errors, which would read as "rolled back"
        return EXIT_SUCCESS if e.code in (0, None) else EXIT_REJECTED
    configure_logging(settings, verbose=args.verbose)

    request = ProvisionRequest(
        username=args.username,
        quota=args.quota,
        user_base=args.base,
        mount_base=args.mountbase,
    )

    if args.simulate:
        gateway, settings = _simulated(settings, request)
    elif gateway is None:
        gateway = SubprocessGateway(settings.host)

    try:
        engine = ProvisioningEngine(gateway, settings)
        result = engine.provision(request, resume=args.resume, timeout=args.timeout)
    except Exception as e:
        print(f"[REJECTED] {e}", file=sys.stderr)
        return failure_exit_code(e, f"provision {request.username}")

    report(result, request)
    return result.exit_code


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
