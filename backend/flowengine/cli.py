#!/usr/bin/env python3
"""Operator CLI for the automation engine.

Usage:
    uv run python -m flowengine.cli <command> [options]

Examples:
    # Publish a template definition from a JSON file
    uv run python -m flowengine.cli publish ./flows/welcome_flow.json --by 12

    # List versions of a template
    uv run python -m flowengine.cli versions welcome_flow

    # Deactivate a version (running executions keep going)
    uv run python -m flowengine.cli deactivate welcome_flow 3

    # Run one sweep by hand
    uv run python -m flowengine.cli sweep

    # Inspect an execution with its decrypted context diffs
    uv run python -m flowengine.cli show 6f1c... --diffs

    # Check the audit hash chain of an execution
    uv run python -m flowengine.cli verify 6f1c...
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from flowengine.config import EngineSettings
from flowengine.db.database import close_database, init_database
from flowengine.db.execution_store import execution_store
from flowengine.db.template_store import template_store
from flowengine.errors import FlowEngineError, InvalidTransitionError, ValidationError
from flowengine.main import build_engine, build_gateway
from flowengine.models import TemplateDefinition


# ANSI color codes
class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"


STATUS_COLORS = {
    "running": Colors.CYAN,
    "waiting": Colors.YELLOW,
    "success": Colors.GREEN,
    "error": Colors.RED,
    "cancelled": Colors.DIM,
}


def colorize(text: str, color: str) -> str:
    """Apply ANSI color to text."""
    return f"{color}{text}{Colors.RESET}"


def out(text: str = "") -> None:
    """Print with immediate flush for non-TTY environments."""
    print(text, flush=True)


async def cmd_publish(args: argparse.Namespace) -> int:
    path = Path(args.file)
    if not path.exists():
        out(colorize(f"Error: File not found: {path}", Colors.RED))
        return 1

    try:
        definition = TemplateDefinition.model_validate_json(path.read_text())
    except PydanticValidationError as e:
        out(colorize(f"Error: {path} is not a template definition:", Colors.RED))
        out(str(e))
        return 1

    if args.inactive:
        definition = definition.model_copy(update={"is_active": False})

    try:
        ref = await template_store.publish(definition, published_by=args.by)
    except ValidationError as e:
        out(colorize(f"✗ Rejected: {len(e.violations)} violation(s)", Colors.RED + Colors.BOLD))
        for violation in e.violations:
            out(colorize(f"  • [{violation['code']}] {violation['message']}", Colors.RED))
        return 1

    out(colorize(f"✓ Published {ref.template_key} v{ref.version}", Colors.GREEN + Colors.BOLD))
    out(colorize(f"  id: {ref.id}", Colors.DIM))
    return 0


async def cmd_versions(args: argparse.Namespace) -> int:
    versions = await template_store.list_versions(args.key)
    if not versions:
        out(colorize(f"No versions of {args.key}", Colors.YELLOW))
        return 1
    for summary in versions:
        state = colorize("active", Colors.GREEN) if summary.is_active else colorize("inactive", Colors.DIM)
        out(
            f"v{summary.version:<4} {state:<20} {summary.scope.value:<7} "
            f"{summary.trigger_type:<28} {summary.node_count} nodes  "
            + colorize(summary.published_at.isoformat(), Colors.DIM)
        )
    return 0


async def cmd_set_active(args: argparse.Namespace, is_active: bool) -> int:
    template = await template_store.set_active(args.key, args.version, is_active)
    word = "Activated" if is_active else "Deactivated"
    out(colorize(f"{word} {template.template_key} v{template.version}", Colors.GREEN))
    return 0


async def cmd_sweep(args: argparse.Namespace, settings: EngineSettings) -> int:
    gateway = build_gateway(settings)
    scheduler, _ = build_engine(settings, gateway)
    try:
        report = await scheduler.sweep()
    finally:
        await gateway.close()

    out(colorize("=== Sweep ===", Colors.BOLD))
    out(f"Recovered:         {len(report.recovered)}")
    out(f"Resumed by signal: {len(report.resumed_by_signal)}")
    out(f"Claimed:           {len(report.claimed)}")
    out(f"Skipped:           {len(report.skipped)}")
    out(f"Signals consumed:  {report.signals_consumed}")
    for error in report.errors:
        out(colorize(f"  • {error}", Colors.RED))
    return 1 if report.errors else 0


async def cmd_show(args: argparse.Namespace, settings: EngineSettings) -> int:
    scheduler, _ = build_engine(settings, build_gateway(settings))
    execution = await execution_store.get(args.execution_id)

    color = STATUS_COLORS.get(execution.status.value, Colors.RESET)
    out(colorize(f"Execution {execution.id}", Colors.BOLD))
    out(f"  template: {execution.template_key} v{execution.template_version}")
    out(f"  subject:  {execution.subject.key} (clinic {execution.subject.clinic_id})")
    out("  status:   " + colorize(execution.status.value, color))
    out(f"  node:     {execution.current_node_id}")
    if execution.wait_until:
        out(f"  wakes:    {execution.wait_until.isoformat()}")
    if execution.last_error:
        out(colorize(f"  error:    {execution.last_error}", Colors.RED))

    out()
    out(colorize("Log:", Colors.BOLD))
    for entry in await scheduler.audit.entries(execution.id):
        line = f"  {entry.seq:>3} {entry.node_id:<20} {entry.node_type:<32} {entry.status.value:<8}"
        if entry.attempt > 1:
            line += f" attempt {entry.attempt}"
        if entry.error_type:
            line += colorize(f" {entry.error_type}: {entry.error_message}", Colors.RED)
        out(line)
        if args.diffs:
            diff = scheduler.audit.read_diff(entry)
            if diff:
                out(colorize("      " + json.dumps(diff, default=str), Colors.DIM))
    return 0


async def cmd_verify(args: argparse.Namespace, settings: EngineSettings) -> int:
    scheduler, _ = build_engine(settings, build_gateway(settings))
    if await scheduler.audit.verify_chain(args.execution_id):
        out(colorize("✓ Audit chain intact", Colors.GREEN + Colors.BOLD))
        return 0
    out(colorize("✗ Audit chain broken", Colors.RED + Colors.BOLD))
    return 1


async def cmd_cancel(args: argparse.Namespace, settings: EngineSettings) -> int:
    scheduler, _ = build_engine(settings, build_gateway(settings))
    execution = await scheduler.cancel(args.execution_id)
    out(f"Execution {execution.id}: {execution.status.value}"
        + (" (cancel requested)" if execution.cancel_requested else ""))
    return 0


async def cmd_retry(args: argparse.Namespace, settings: EngineSettings) -> int:
    gateway = build_gateway(settings)
    scheduler, _ = build_engine(settings, gateway)
    try:
        execution = await scheduler.retry(args.execution_id)
    finally:
        await gateway.close()
    out(f"Execution {execution.id}: {execution.status.value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Operate the clinic automation engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database", "-d",
        default=None,
        help="SQLite database path (default: FLOWENGINE_DATABASE_PATH)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    publish = subparsers.add_parser("publish", help="Publish a template definition")
    publish.add_argument("file", help="Path to a JSON template definition")
    publish.add_argument("--by", type=int, default=None, help="Publishing user id")
    publish.add_argument(
        "--inactive",
        action="store_true",
        help="Publish the version without activating it",
    )

    versions = subparsers.add_parser("versions", help="List versions of a template")
    versions.add_argument("key", help="Template key")

    for name in ("activate", "deactivate"):
        sub = subparsers.add_parser(name, help=f"{name.capitalize()} a template version")
        sub.add_argument("key", help="Template key")
        sub.add_argument("version", type=int, help="Version number")

    subparsers.add_parser("sweep", help="Run one scheduler sweep")

    show = subparsers.add_parser("show", help="Show an execution and its log")
    show.add_argument("execution_id")
    show.add_argument("--diffs", action="store_true", help="Decrypt and print context diffs")

    verify = subparsers.add_parser("verify", help="Verify an execution's audit hash chain")
    verify.add_argument("execution_id")

    cancel = subparsers.add_parser("cancel", help="Cancel an execution")
    cancel.add_argument("execution_id")

    retry = subparsers.add_parser("retry", help="Retry an errored execution")
    retry.add_argument("execution_id")

    return parser


async def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = EngineSettings.from_env()
    if args.database:
        settings.database_path = args.database

    await init_database(settings.database_path)
    try:
        if args.command == "publish":
            return await cmd_publish(args)
        elif args.command == "versions":
            return await cmd_versions(args)
        elif args.command in ("activate", "deactivate"):
            return await cmd_set_active(args, args.command == "activate")
        elif args.command == "sweep":
            return await cmd_sweep(args, settings)
        elif args.command == "show":
            return await cmd_show(args, settings)
        elif args.command == "verify":
            return await cmd_verify(args, settings)
        elif args.command == "cancel":
            return await cmd_cancel(args, settings)
        elif args.command == "retry":
            return await cmd_retry(args, settings)
        return 2
    except InvalidTransitionError as e:
        out(colorize(f"Error: {e}", Colors.YELLOW))
        return 1
    except FlowEngineError as e:
        out(colorize(f"Error: {e}", Colors.RED))
        return 1
    finally:
        await close_database()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
