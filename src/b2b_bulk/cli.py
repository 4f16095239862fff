"""Operator commands: audit verification, compliance reports, retention."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from datetime import date, datetime, timedelta
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

from b2b_bulk import __version__
from b2b_bulk.app import AppContext, build_app_context
from b2b_bulk.logging_utils import configure_logging
from b2b_bulk.utils.serialization import json_default
from b2b_bulk.utils.time import end_of_day, start_of_day, utc_now

_DEFAULT_REPORT_DAYS = 30


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def _period(args: argparse.Namespace) -> tuple[datetime, datetime]:
    today = utc_now().date()
    end_day = args.end or today
    start_day = args.start or end_day - timedelta(days=_DEFAULT_REPORT_DAYS)
    return start_of_day(start_day), end_of_day(end_day)


def _emit(payload: dict[str, object]) -> None:
    print(json.dumps(payload, indent=2, default=json_default))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="b2b-bulk", description="B2B bulk-order audit and maintenance commands"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("verify", "Verify audit trail integrity over a date range"),
        ("report", "Print a compliance report as JSON"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("--start", type=_parse_day, help="First day (YYYY-MM-DD)")
        sub.add_argument("--end", type=_parse_day, help="Last day (YYYY-MM-DD), default today")

    commands.add_parser("retention", help="Apply audit and operation history retention")
    return parser


async def _verify(context: AppContext, args: argparse.Namespace) -> int:
    start, end = _period(args)
    report = await context.audit.verify_integrity(start, end)
    _emit(report.to_dict())
    return 0 if report.valid else 1


async def _report(context: AppContext, args: argparse.Namespace) -> int:
    start, end = _period(args)
    report = await context.audit.generate_compliance_report(start, end)
    _emit(report.to_dict())
    return 0


async def _retention(context: AppContext, args: argparse.Namespace) -> int:
    removed_partitions = context.audit.apply_retention()
    removed_records = await context.history.cleanup_old_records()
    _emit(
        {
            "audit_partitions_removed": removed_partitions,
            "history_records_removed": removed_records,
        }
    )
    return 0


_COMMANDS = {"verify": _verify, "report": _report, "retention": _retention}


async def _run(args: argparse.Namespace, context: AppContext) -> int:
    async with context:
        return await _COMMANDS[args.command](context, args)


def main(argv: Sequence[str] | None = None, context: AppContext | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    return asyncio.run(_run(args, context or build_app_context()))


def run_entrypoint() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run_entrypoint()
