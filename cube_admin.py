"""Maintenance commands for the financial trend cube.

    python cube_admin.py --tenant acme populate --clear
    python cube_admin.py --tenant acme verify --start 2025-01-01 --end 2025-12-31
"""

import argparse
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Callable, ContextManager, Optional, Sequence

from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_cube_rows
from cube import CubeService
from database import session_scope
from periods import Granularity
from services import AccountService, CategoryService, TransactionService


logger = logging.getLogger("cube_admin")

SessionFactory = Callable[[], ContextManager[Session]]


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date: {value}") from exc


def _granularity(value: str) -> Granularity:
    try:
        return Granularity(value.upper())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Unknown granularity: {value}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Financial trend cube maintenance")
    parser.add_argument("--tenant", default=None, help="Tenant id (defaults to settings)")
    sub = parser.add_subparsers(dest="command", required=True)

    populate = sub.add_parser("populate", help="Build the cube from the whole ledger")
    populate.add_argument("--start", type=_iso_date)
    populate.add_argument("--end", type=_iso_date)
    populate.add_argument("--clear", action="store_true", help="Delete existing rows first")
    populate.add_argument("--account", type=int, help="Only rebuild rows of this account id")

    rebuild = sub.add_parser("rebuild", help="Regenerate a date range")
    rebuild.add_argument("--start", type=_iso_date, required=True)
    rebuild.add_argument("--end", type=_iso_date, required=True)

    sub.add_parser("clear", help="Delete every cube row of the tenant")
    sub.add_parser("status", help="Print cube statistics")

    verify = sub.add_parser("verify", help="Compare cube totals with the ledger")
    verify.add_argument("--start", type=_iso_date, required=True)
    verify.add_argument("--end", type=_iso_date, required=True)

    export = sub.add_parser("export", help="Write cube rows as CSV")
    export.add_argument("--granularity", type=_granularity)
    export.add_argument("--start", type=_iso_date)
    export.add_argument("--end", type=_iso_date)
    export.add_argument("--output", type=Path)

    ingest = sub.add_parser("import", help="Import ledger transactions from CSV")
    ingest.add_argument("path", type=Path)
    return parser


def _run(args: argparse.Namespace, session: Session) -> int:
    cube = CubeService(session, args.tenant)

    if args.command == "populate":
        result = cube.populate_historical_data(
            args.start, args.end, clear_existing=args.clear, account_id=args.account
        )
        print(
            f"periods={result.periods_processed} rows={result.rows_written} "
            f"elapsed={result.elapsed_seconds:.2f}s"
        )
    elif args.command == "rebuild":
        print(f"rows={cube.regenerate_cube_for_date_range(args.start, args.end)}")
    elif args.command == "clear":
        print(f"deleted={cube.clear_all()}")
    elif args.command == "status":
        stats = cube.statistics()
        print(f"rows={stats.total_rows}")
        for granularity, count in sorted(stats.rows_by_granularity.items()):
            print(f"  {granularity.value}={count}")
        print(f"periods={stats.earliest_period}..{stats.latest_period}")
        print(f"accounts={stats.account_count} categories={stats.category_count}")
        print(f"last_updated={stats.last_updated}")
    elif args.command == "verify":
        discrepancies = cube.verify(args.start, args.end)
        for item in discrepancies:
            print(
                f"{item.period.granularity.value} {item.period.start}..{item.period.end} "
                f"cube={item.cube_amount_cents}/{item.cube_count} "
                f"ledger={item.ledger_amount_cents}/{item.ledger_count}"
            )
        if discrepancies:
            return 1
        print("ok")
    elif args.command == "export":
        accounts = {a.id: a.name for a in AccountService(session, cube.tenant_id).list_all()}
        categories = {
            c.id: c.name for c in CategoryService(session, cube.tenant_id).list_all()
        }
        content = export_cube_rows(
            cube.rows(args.granularity, args.start, args.end), accounts, categories
        )
        if args.output:
            args.output.write_text(content, encoding="utf-8")
        else:
            sys.stdout.write(content)
    elif args.command == "import":
        content = args.path.read_text(encoding="utf-8")
        imported, errors = TransactionService(session, cube.tenant_id, cube).import_csv(content)
        for error in errors:
            print(error, file=sys.stderr)
        if errors:
            return 2
        print(f"imported={imported}")
    return 0


def main(
    argv: Optional[Sequence[str]] = None, session_factory: SessionFactory = session_scope
) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        with session_factory() as session:
            return _run(args, session)
    except ValueError as exc:
        logger.error(f"cube_admin_failed: command={args.command} error={exc}")
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
