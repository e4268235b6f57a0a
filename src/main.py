from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from typing import Sequence

from config import config
from db.db import init_db
from domain.errors import classify_error
from services.aggregation_preview import preview_aggregation
from services.line_item_invalidation import LineItemInvalidator
from services.line_item_processor import LineItemProcessor

logger = logging.getLogger(__name__)


def run_process(cutoff: date | None) -> int:
    settings = config()
    session_factory = init_db(settings.database_url, echo=settings.database_echo)
    processor = LineItemProcessor(session_factory, settings.aggregation, page_size=settings.page_size)
    summary = processor.execute(cutoff)

    print(f"Processed line items up to {summary.cutoff.isoformat()}")
    print(f"  Fetched:            {summary.fetched}")
    print(f"  Composed (ignored): {summary.ignored}")
    print(f"  Rejected items:     {summary.rejected}")
    print(f"  Transactions:       {len(summary.committed)}")
    print(f"  Net-zero groups:    {summary.zero_amount}")
    print(f"  Failed groups:      {len(summary.failed)}")
    return 0


def run_preview(start: date, end: date) -> int:
    settings = config()
    session_factory = init_db(settings.database_url, echo=settings.database_echo)
    with session_factory() as session:
        records = preview_aggregation(session, settings.aggregation, start, end, page_size=settings.page_size)

    for record in records:
        vat = "" if record.vat_rate is None else str(record.vat_rate)
        print(
            f"{record.reference_date.isoformat()}  {record.grouping_key:<30} {record.ledger_account:>8} "
            f"{record.document_type:>6} {record.direction.value} {record.amount:>12} {vat:>6} "
            f"({len(record.source_line_ids)} items)"
        )
    return 0


def run_invalidate(start: date, end: date) -> int:
    settings = config()
    session_factory = init_db(settings.database_url, echo=settings.database_echo)
    summary = LineItemInvalidator(session_factory).execute(start, end)
    print(f"Invalidated {len(summary.reference_dates)} reference dates")
    print(f"  Deleted transactions: {len(summary.deleted_transactions)}")
    print(f"  Reset line items:     {summary.reset_line_items}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    parser = argparse.ArgumentParser(description="Aggregate sales line items into ledger transactions.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    process = subparsers.add_parser("process", help="aggregate and commit unprocessed line items")
    process.add_argument("--cutoff", type=date.fromisoformat, default=None, help="latest reference date (inclusive)")

    preview = subparsers.add_parser("preview", help="show aggregates for a date range without writing")
    preview.add_argument("start", type=date.fromisoformat)
    preview.add_argument("end", type=date.fromisoformat)

    invalidate = subparsers.add_parser("invalidate", help="drop local transactions and reprocess a date range")
    invalidate.add_argument("start", type=date.fromisoformat)
    invalidate.add_argument("end", type=date.fromisoformat)

    args = parser.parse_args(argv)
    try:
        if args.command == "process":
            return run_process(args.cutoff)
        if args.command == "preview":
            return run_preview(args.start, args.end)
        return run_invalidate(args.start, args.end)
    except Exception as exc:
        logger.exception("Run failed (%s)", classify_error(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
