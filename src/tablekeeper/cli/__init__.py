"""
Command line entry point for the table provisioning worker.

Usage:
    tablekeeper run                 # one setup cycle, then exit
    tablekeeper serve               # scheduled worker until interrupted
    tablekeeper status [--json]     # print the persisted run status
    tablekeeper delete --yes        # delete every managed table
    tablekeeper health              # exit 0 when infrastructure is healthy
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Sequence

from tablekeeper import __version__
from tablekeeper.cli.ux import console, error, header, info, print_table, styled_status, success, warning
from tablekeeper.config.settings import Settings
from tablekeeper.core.errors import (
    ProvisioningError,
    TableKeeperError,
    format_error_message,
    main_with_error_handling,
)
from tablekeeper.logging import bind_worker_context, configure_logging
from tablekeeper.models import ExecutionResult
from tablekeeper.worker.orchestrator import CycleOutcome
from tablekeeper.worker.service import InfrastructureService, create_service

SUCCESS_OUTCOMES = {CycleOutcome.COMPLETED, CycleOutcome.ALREADY_COMPLETED}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tablekeeper", description="Table provisioning worker")
    parser.add_argument("--version", action="version", version=f"tablekeeper {__version__}")
    parser.add_argument("--environment", help="Deployment environment (development, testing, production)")
    parser.add_argument("--tables", help="Comma-separated required table names, e.g. users,role")
    parser.add_argument("--table-prefix", help="Prefix for physical table names")
    parser.add_argument("--backend", choices=["dynamodb", "memory"], help="Table store backend")
    parser.add_argument("--status-file", help="Path to the status file")
    parser.add_argument("--lock-file", help="Path to the lock file")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--log-format", choices=["json", "console"], help="Log renderer")
    parser.add_argument("--dry-run", action="store_true", help="Record a run without touching tables")

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run one setup cycle and exit")

    serve_parser = subparsers.add_parser("serve", help="Run the scheduled worker until interrupted")
    serve_parser.add_argument("--schedule", help="Cron schedule with seconds as the sixth field")
    serve_parser.add_argument(
        "--force-recreate", action="store_true", help="Run setup even if it already completed"
    )

    status_parser = subparsers.add_parser("status", help="Show the persisted run status")
    status_parser.add_argument("--json", action="store_true", help="Print raw JSON")

    delete_parser = subparsers.add_parser("delete", help="Delete every managed table")
    delete_parser.add_argument("--yes", action="store_true", help="Confirm deletion")

    subparsers.add_parser("health", help="Report infrastructure health")

    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Settings from the environment, overridden by any flags given."""
    overrides: dict[str, Any] = {}
    if args.environment:
        overrides["environment"] = args.environment
    if args.tables:
        overrides["required_tables"] = [t.strip() for t in args.tables.split(",") if t.strip()]
    if args.table_prefix:
        overrides["table_prefix"] = args.table_prefix
    if args.backend:
        overrides["table_store_backend"] = args.backend
    if args.status_file:
        overrides["status_file_path"] = args.status_file
    if args.lock_file:
        overrides["lock_file_path"] = args.lock_file
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_format:
        overrides["log_format"] = args.log_format
    if args.dry_run:
        overrides["dry_run"] = True
    if getattr(args, "schedule", None):
        overrides["schedule"] = args.schedule
    if getattr(args, "force_recreate", False):
        overrides["force_recreate"] = True
    if args.command == "serve":
        overrides["run_once"] = False
    return Settings(**overrides)


def print_result(result: ExecutionResult | None) -> None:
    if result is None:
        warning("No status recorded yet")
        return

    console.print(f"[bold]Status:[/bold] {styled_status(result.status.value)}")
    console.print(f"[bold]Environment:[/bold] {result.environment or '-'}")
    console.print(f"[bold]Started:[/bold] {result.start_time.isoformat()}")
    if result.end_time:
        console.print(f"[bold]Duration:[/bold] {result.duration:.1f}s")
    if result.retry_count:
        console.print(f"[bold]Retries:[/bold] {result.retry_count}")
    if result.error_message:
        console.print(f"[bold]Error:[/bold] [error]{result.error_message}[/error]")

    if result.resources:
        print_table(
            "Tables",
            ["Name", "Status", "Indexes", "ARN"],
            [[r.name, r.status, str(r.index_count), r.arn or "-"] for r in result.resources],
        )


def _raise_for_outcome(service: InfrastructureService, outcome: CycleOutcome, action: str) -> None:
    last_error = service.orchestrator.last_error
    if isinstance(last_error, TableKeeperError):
        error(format_error_message(last_error))
        raise last_error
    raise ProvisioningError(f"{action} ended with outcome '{outcome.value}'")


async def run_command(service: InfrastructureService) -> int:
    header("tablekeeper: setup")
    outcome = await service.orchestrator.run_cycle()
    print_result(await service.get_status())
    if outcome not in SUCCESS_OUTCOMES:
        _raise_for_outcome(service, outcome, "setup")
    success("Infrastructure is ready")
    return 0


async def serve_command(service: InfrastructureService) -> int:
    info(f"Starting worker (schedule: {service.orchestrator.config.schedule})")
    await service.start()
    try:
        await service.orchestrator.wait_stopped()
    finally:
        await service.stop()
    return 0


async def status_command(service: InfrastructureService, as_json: bool) -> int:
    result = await service.get_status()
    if as_json:
        console.print_json(json.dumps(result.to_dict() if result else None))
        return 0
    header("tablekeeper: status")
    print_result(result)
    return 0


async def delete_command(service: InfrastructureService, confirmed: bool) -> int:
    if not confirmed:
        error("Deletion removes every managed table; pass --yes to confirm")
        return 1
    header("tablekeeper: delete")
    await service.schedule_delete()
    outcome = await service.orchestrator.run_cycle()
    print_result(await service.get_status())
    if outcome is not CycleOutcome.DELETED:
        _raise_for_outcome(service, outcome, "deletion")
    success("Infrastructure deleted")
    return 0


async def health_command(service: InfrastructureService) -> int:
    health = await service.get_health_status()
    healthy, reason = await service.is_worker_healthy()
    console.print_json(json.dumps({**health, "reason": reason}, default=str))
    return 0 if healthy else 1


async def dispatch(args: argparse.Namespace, service: InfrastructureService) -> int:
    if args.command == "run":
        return await run_command(service)
    if args.command == "serve":
        return await serve_command(service)
    if args.command == "status":
        return await status_command(service, args.json)
    if args.command == "delete":
        return await delete_command(service, args.yes)
    return await health_command(service)


@main_with_error_handling()
def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    settings = settings_from_args(args)
    configure_logging(settings.log_level, settings.log_format)

    service = create_service(settings)
    bind_worker_context(service.orchestrator.owner_id, settings.environment)
    return asyncio.run(dispatch(args, service))
