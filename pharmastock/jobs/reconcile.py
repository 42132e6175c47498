"""
Jobs de maintenance du stock, lancés à la main ou par un cron externe.

Usage :
    pharmastock-jobs orphaned-reservations
    pharmastock-jobs state-mismatches
    pharmastock-jobs stock-counters
    pharmastock-jobs rebuild-rollups --product-id 12
    pharmastock-jobs all --dry-run

Chaque job commit à la fin (sauf --dry-run) ; les paquets en échec sont
déjà isolés par les savepoints des jobs.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict

from sqlalchemy.orm import Session

from pharmastock.app.config import get_settings
from pharmastock.app.db.session import SessionLocal
from pharmastock.app.logging_setup import setup_logging
from pharmastock.services.aggregation import rebuild_rollups
from pharmastock.services.reconciliation import (
    ReconciliationReport,
    reconcile_orphaned_reservations,
    reconcile_state_mismatches,
    reconcile_stock_counters,
)

logger = logging.getLogger("pharmastock.jobs")


def _print_report(report: ReconciliationReport, verbose: bool) -> None:
    print(f"{report.job}: examined={report.examined} corrected={report.corrected} errors={report.errors}")
    if verbose:
        for d in report.details:
            print(f"  #{d.record_id} {d.before} -> {d.after} ({d.action})")


def cmd_orphaned(args: argparse.Namespace, db: Session) -> list[ReconciliationReport]:
    return [reconcile_orphaned_reservations(db)]


def cmd_mismatches(args: argparse.Namespace, db: Session) -> list[ReconciliationReport]:
    return [reconcile_state_mismatches(db)]


def cmd_counters(args: argparse.Namespace, db: Session) -> list[ReconciliationReport]:
    return [reconcile_stock_counters(db)]


def cmd_rebuild(args: argparse.Namespace, db: Session) -> list[ReconciliationReport]:
    rows = rebuild_rollups(db, product_id=args.product_id, warehouse_id=args.warehouse_id)
    print(f"rollups: {len(rows)} row(s) rebuilt")
    return []


def cmd_all(args: argparse.Namespace, db: Session) -> list[ReconciliationReport]:
    # ordre : réservations, puis états, puis compteurs et cache
    reports = [
        reconcile_orphaned_reservations(db),
        reconcile_state_mismatches(db),
        reconcile_stock_counters(db),
    ]
    rebuild_rollups(db)
    return reports


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pharmastock-jobs",
        description="PHARMASTOCK reconciliation and roll-up jobs",
    )
    parser.add_argument("--dry-run", action="store_true", dest="dry_run", help="Run and report, then roll back")
    parser.add_argument("--json", action="store_true", help="Print reports as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print every correction")
    subparsers = parser.add_subparsers(dest="command", help="Available jobs")

    p = subparsers.add_parser("orphaned-reservations", help="Release reservations without a live document")
    p.set_defaults(func=cmd_orphaned)

    p = subparsers.add_parser("state-mismatches", help="Fix illegal or stale unit states")
    p.set_defaults(func=cmd_mismatches)

    p = subparsers.add_parser("stock-counters", help="Recompute cached product counters")
    p.set_defaults(func=cmd_counters)

    p = subparsers.add_parser("rebuild-rollups", help="Rebuild stock roll-ups from the ledger")
    p.add_argument("--product-id", type=int, dest="product_id")
    p.add_argument("--warehouse-id", type=int, dest="warehouse_id")
    p.set_defaults(func=cmd_rebuild)

    p = subparsers.add_parser("all", help="Run every reconciliation job, then rebuild roll-ups")
    p.set_defaults(func=cmd_all)

    return parser


def run(args: argparse.Namespace, db: Session) -> int:
    reports = args.func(args, db)

    if args.dry_run:
        db.rollback()
        logger.info("Dry run: %s rolled back", args.command)
    else:
        db.commit()

    for report in reports:
        if args.json:
            print(json.dumps(asdict(report)))
        else:
            _print_report(report, args.verbose)

    return 1 if any(r.errors for r in reports) else 0


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(get_settings())
    db = SessionLocal()
    try:
        code = run(args, db)
    except Exception:
        logger.exception("Job %s failed", args.command)
        db.rollback()
        code = 2
    finally:
        db.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
