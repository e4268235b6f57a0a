from __future__ import annotations

import logging
from datetime import date

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from db.repositories import LedgerTransactionRepository, SourceLineItemRepository
from domain.errors import InvalidationError

logger = logging.getLogger(__name__)


class InvalidationSummary(BaseModel):
    reference_dates: list[date] = Field(default_factory=list)
    deleted_transactions: list[str] = Field(default_factory=list)
    reset_line_items: int = 0


class LineItemInvalidator:
    """Undo local processing for a date range so the next run books it again.

    Works one reference date per transaction. Transactions already carrying a
    ledger-system key were exported and must be reversed there first, so they
    abort the invalidation of that date.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def execute(self, start: date, end: date) -> InvalidationSummary:
        if end < start:
            msg = "end must not be before start"
            raise ValueError(msg)

        summary = InvalidationSummary()
        with self._session_factory() as session:
            reference_dates = SourceLineItemRepository(session).list_reference_dates(start, end)

        for reference_date in reference_dates:
            self._invalidate_reference_date(reference_date, summary)
            summary.reference_dates.append(reference_date)
        return summary

    def _invalidate_reference_date(self, reference_date: date, summary: InvalidationSummary) -> None:
        with self._session_factory.begin() as session:
            line_items = SourceLineItemRepository(session)
            transactions = LedgerTransactionRepository(session)

            item_ids = line_items.list_ids_for_reference_date(reference_date)
            linked = transactions.list_for_line_items(item_ids)
            exported = [tx for tx in linked if tx.key]
            if exported:
                raise InvalidationError(
                    f"Transaction {exported[0].number!r} was already exported; reverse it in the ledger first",
                    transaction_number=exported[0].number,
                    key=exported[0].key,
                )

            # Transactions may also hold items from other dates; release those too.
            affected_ids = set(item_ids)
            for tx in linked:
                logger.info("Deleting ledger transaction %r", tx.number)
                affected_ids.update(tx.source_line_ids)
                if tx.id is not None:
                    transactions.delete(tx.id)
                summary.deleted_transactions.append(tx.number)

            reset = line_items.reset_processed(sorted(affected_ids))
            summary.reset_line_items += reset
            logger.info("Reset %d line items for %s", reset, reference_date.isoformat())
