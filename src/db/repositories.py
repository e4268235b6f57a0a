from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable, Iterator, Sequence

from sqlalchemy import Select, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import models
from domain.line_items import (
    AggregationRecord,
    LedgerAccount,
    LedgerTransaction,
    LineItemId,
    PaymentDirection,
    SourceLineItem,
)

DEFAULT_PAGE_SIZE = 100


class SourceLineItemRepository:
    """Source line items. Never commits: callers own the transaction."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def add_many(self, items: Iterable[SourceLineItem]) -> None:
        self._session.add_all(
            models.SourceLineItemOrm(
                id=item.id,
                reference_date=item.reference_date,
                data=item.data,
                processed_at=item.processed_at,
            )
            for item in items
        )
        self._session.flush()

    def get(self, item_id: str) -> SourceLineItem | None:
        orm_item = self._session.get(models.SourceLineItemOrm, item_id)
        if orm_item is None:
            return None
        return self._to_domain(orm_item)

    def iter_unprocessed(self, cutoff: date, *, page_size: int = DEFAULT_PAGE_SIZE) -> Iterator[SourceLineItem]:
        """Yield unprocessed items with reference_date <= cutoff, ascending by id."""
        stmt = (
            select(models.SourceLineItemOrm)
            .where(models.SourceLineItemOrm.processed_at.is_(None))
            .where(models.SourceLineItemOrm.reference_date <= cutoff)
        )
        yield from self._iter_pages(stmt, page_size)

    def iter_between(self, start: date, end: date, *, page_size: int = DEFAULT_PAGE_SIZE) -> Iterator[SourceLineItem]:
        """Yield every item with start <= reference_date <= end, processed or not."""
        stmt = select(models.SourceLineItemOrm).where(models.SourceLineItemOrm.reference_date.between(start, end))
        yield from self._iter_pages(stmt, page_size)

    def list_reference_dates(self, start: date, end: date) -> list[date]:
        stmt = (
            select(models.SourceLineItemOrm.reference_date)
            .where(models.SourceLineItemOrm.reference_date.between(start, end))
            .distinct()
            .order_by(models.SourceLineItemOrm.reference_date.asc())
        )
        return list(self._session.scalars(stmt))

    def list_ids_for_reference_date(self, reference_date: date) -> list[LineItemId]:
        stmt = (
            select(models.SourceLineItemOrm.id)
            .where(models.SourceLineItemOrm.reference_date == reference_date)
            .order_by(models.SourceLineItemOrm.id.asc())
        )
        return [LineItemId(item_id) for item_id in self._session.scalars(stmt)]

    def mark_processed(self, item_ids: Sequence[str], *, processed_at: datetime | None = None) -> int:
        if not item_ids:
            return 0
        stmt = (
            update(models.SourceLineItemOrm)
            .where(models.SourceLineItemOrm.id.in_(item_ids))
            .values(processed_at=processed_at or datetime.now(timezone.utc))
        )
        return self._session.execute(stmt).rowcount

    def reset_processed(self, item_ids: Sequence[str]) -> int:
        if not item_ids:
            return 0
        stmt = (
            update(models.SourceLineItemOrm)
            .where(models.SourceLineItemOrm.id.in_(item_ids))
            .values(processed_at=None)
        )
        return self._session.execute(stmt).rowcount

    def _iter_pages(self, stmt: Select[tuple[models.SourceLineItemOrm]], page_size: int) -> Iterator[SourceLineItem]:
        # Keyset paging on id so rows changing underneath never shift the window.
        if page_size <= 0:
            msg = "page_size must be > 0"
            raise ValueError(msg)

        last_id: str | None = None
        while True:
            page_stmt = stmt
            if last_id is not None:
                page_stmt = page_stmt.where(models.SourceLineItemOrm.id > last_id)
            page_stmt = page_stmt.order_by(models.SourceLineItemOrm.id.asc()).limit(page_size)

            page = self._session.scalars(page_stmt).all()
            if not page:
                return
            for orm_item in page:
                yield self._to_domain(orm_item)
            last_id = page[-1].id

    @staticmethod
    def _to_domain(orm_item: models.SourceLineItemOrm) -> SourceLineItem:
        return SourceLineItem(
            id=LineItemId(orm_item.id),
            reference_date=orm_item.reference_date,
            data=dict(orm_item.data),
            processed_at=_as_utc(orm_item.processed_at),
        )


class LedgerTransactionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, record: AggregationRecord, number: str) -> LedgerTransaction:
        """Insert one transaction with its source links.

        Flushes so a duplicate number surfaces as IntegrityError inside the
        caller's transaction.
        """
        line_items = self._session.scalars(
            select(models.SourceLineItemOrm).where(models.SourceLineItemOrm.id.in_(record.source_line_ids))
        ).all()
        missing = set(record.source_line_ids) - {item.id for item in line_items}
        if missing:
            msg = f"Unknown source line items: {sorted(missing)}"
            raise LookupError(msg)

        orm_tx = models.LedgerTransactionOrm(
            number=number,
            reference_date=record.reference_date,
            document_type=record.document_type,
            amount=record.amount,
            direction=record.direction.value,
            vat_rate=record.vat_rate,
            ledger_account=record.ledger_account,
            cost_center=record.cost_center,
            cost_object=record.cost_object,
        )
        orm_tx.source_line_items = list(line_items)

        self._session.add(orm_tx)
        self._session.flush()
        return self._to_domain(orm_tx)

    def get_by_number(self, number: str) -> LedgerTransaction | None:
        orm_tx = self._session.scalar(
            select(models.LedgerTransactionOrm).where(models.LedgerTransactionOrm.number == number)
        )
        if orm_tx is None:
            return None
        return self._to_domain(orm_tx)

    def list(self) -> list[LedgerTransaction]:
        orm_txs = self._session.scalars(
            select(models.LedgerTransactionOrm).order_by(models.LedgerTransactionOrm.id.asc())
        ).all()
        return [self._to_domain(tx) for tx in orm_txs]

    def list_for_line_items(self, item_ids: Sequence[str]) -> list[LedgerTransaction]:
        if not item_ids:
            return []
        stmt = (
            select(models.LedgerTransactionOrm)
            .where(
                models.LedgerTransactionOrm.source_line_items.any(models.SourceLineItemOrm.id.in_(item_ids))
            )
            .order_by(models.LedgerTransactionOrm.id.asc())
        )
        return [self._to_domain(tx) for tx in self._session.scalars(stmt).all()]

    def delete(self, transaction_id: int) -> None:
        self._session.execute(
            delete(models.ledger_transaction_sources).where(
                models.ledger_transaction_sources.c.ledger_transaction_id == transaction_id
            )
        )
        self._session.execute(
            delete(models.LedgerTransactionOrm)
            .where(models.LedgerTransactionOrm.id == transaction_id)
        )

    @staticmethod
    def _to_domain(orm_tx: models.LedgerTransactionOrm) -> LedgerTransaction:
        return LedgerTransaction(
            id=orm_tx.id,
            number=orm_tx.number,
            reference_date=orm_tx.reference_date,
            document_type=orm_tx.document_type,
            amount=orm_tx.amount,
            direction=PaymentDirection(orm_tx.direction),
            vat_rate=orm_tx.vat_rate,
            ledger_account=LedgerAccount(orm_tx.ledger_account),
            cost_center=orm_tx.cost_center,
            cost_object=orm_tx.cost_object,
            source_line_ids=sorted(LineItemId(item.id) for item in orm_tx.source_line_items),
            key=orm_tx.key,
            created_at=_as_utc(orm_tx.created_at),
        )


def is_number_collision(exc: BaseException) -> bool:
    """True when ``exc`` is a unique violation on the transaction number."""
    if not isinstance(exc, IntegrityError):
        return False
    message = str(exc.orig)
    return models.NUMBER_UNIQUE_CONSTRAINT in message or "ledger_transactions.number" in message


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; stored values are always UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
