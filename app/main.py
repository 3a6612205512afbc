"""
Command-line entry point for Split Ledger.

Meant to be run by cron (or any scheduler) once a day or more often:

    python -m app.main sweep
    python -m app.main sweep --now 2024-01-22T09:00:00

A sweep executes every scheduled action that is due and prints a JSON
summary. The process exits non-zero when any execution failed so the
calling scheduler can flag the run.
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from typing import Optional

from splitledger.audit import configure_logging
from splitledger.config import get_settings, validate_all_settings
from splitledger.orchestrator import create_app_components


def parse_now(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO timestamp: {value!r}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="splitledger", description="Split Ledger maintenance commands")
    commands = parser.add_subparsers(dest="command", required=True)

    sweep = commands.add_parser("sweep", help="Execute all due scheduled actions")
    sweep.add_argument(
        "--now",
        type=parse_now,
        default=None,
        help="Reference time (ISO 8601); defaults to the current UTC time",
    )

    commands.add_parser("check-config", help="Validate configuration and exit")
    return parser


async def run_sweep(now: datetime) -> dict:
    _, scheduling = create_app_components()
    result = await scheduling.run_due(now)
    return result.model_dump(mode="json") | {
        "succeeded": result.succeeded,
        "failed": result.failed,
        "skipped": result.skipped,
    }


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(get_settings().app.log_level)

    if args.command == "check-config":
        results = validate_all_settings()
        print(json.dumps(results, indent=2))
        return 0 if all(v for k, v in results.items() if not k.endswith("_error")) else 1

    summary = asyncio.run(run_sweep(args.now or datetime.utcnow()))
    print(json.dumps(summary, indent=2))
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
