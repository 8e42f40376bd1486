"""Console entry point for the WB Fleet Admin CLI."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List

from config import AdminConfig
from errors import (
    BusyError,
    FleetAdminError,
    InventoryError,
    NotFoundError,
    RemoteCommandError,
    TransportError,
    UnauthorizedCommandError,
)
from log_utils import setup_logging
from orchestrator import OperationOrchestrator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BUSY = 2


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="WB Fleet Admin: update and restart instances on the shared host",
    )
    parser.add_argument("--host", help="Managed host (default: $REMOTE_HOST)")
    parser.add_argument("--ssh-user", help="SSH user (default: root)")
    parser.add_argument("--ssh-key", help="Private key path (default: ~/.ssh/id_rsa)")
    parser.add_argument("--inventory-url", help="Inventory (servers.json) URL")
    parser.add_argument("--poll-interval", type=float, metavar="SECONDS")
    parser.add_argument("--max-attempts", type=int, metavar="N")
    parser.add_argument("--settle-delay", type=float, metavar="SECONDS")
    parser.add_argument("--command-timeout", type=float, metavar="SECONDS")
    parser.add_argument("--log-file", default="wb-fleet-admin.log")
    parser.add_argument("--verbose", action="store_true")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    sub.add_parser("list", help="List instances from inventory")

    status = sub.add_parser("status", help="Show lifecycle status and health")
    status.add_argument("instance")

    logs = sub.add_parser("logs", help="Print an instance's container log")
    logs.add_argument("instance")
    logs.add_argument("--tail", type=int, metavar="N")

    sub.add_parser("versions", help="List installable server versions")

    restart = sub.add_parser("restart", help="Restart an instance and wait for startup")
    restart.add_argument("instance")

    update = sub.add_parser("update", help="Update an instance's version, then restart it")
    update.add_argument("instance")
    update.add_argument("version")

    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def run_command(orchestrator: OperationOrchestrator, args) -> int:
    """Dispatch one parsed subcommand; returns the process exit code."""
    if args.command == "list":
        _print_json([inst.to_dict() for inst in orchestrator.list_instances(refresh=True)])
        return EXIT_OK

    if args.command == "status":
        _print_json(orchestrator.get_status(args.instance).to_dict())
        return EXIT_OK

    if args.command == "logs":
        result = orchestrator.get_logs(args.instance, tail=args.tail)
        sys.stdout.write(result.stdout)
        if result.stderr:
            sys.stderr.write(result.stderr)
        return EXIT_OK if result.success else EXIT_FAILED

    if args.command == "versions":
        for version in orchestrator.get_version_catalog():
            print(version)
        return EXIT_OK

    if args.command == "restart":
        result = orchestrator.request_restart(args.instance)
    else:
        result = orchestrator.request_update(args.instance, args.version)

    _print_json(result.to_dict())
    if not result.success:
        logger.error(result.message)
        return EXIT_FAILED
    if result.readiness_timed_out:
        logger.warning(result.message)
    else:
        logger.info(result.message)
    return EXIT_OK


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose, log_file=args.log_file)

    config = AdminConfig.from_args(args)
    orchestrator = OperationOrchestrator.from_config(config)

    try:
        return run_command(orchestrator, args)
    except BusyError as e:
        logger.warning(str(e))
        return EXIT_BUSY
    except (NotFoundError, UnauthorizedCommandError, ValueError) as e:
        logger.error(str(e))
        return EXIT_FAILED
    except (TransportError, InventoryError, RemoteCommandError) as e:
        logger.error(f"Remote failure: {e}")
        return EXIT_FAILED
    except FleetAdminError as e:
        logger.error(str(e))
        return EXIT_FAILED
    finally:
        orchestrator.shutdown()
