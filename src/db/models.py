from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, BigInteger, Column, Date, DateTime, ForeignKey, Index, Integer, String, Table
from sqlalchemy.dialects import mysql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from domain.transaction_numbers import MAX_NUMBER_LENGTH

NUMBER_UNIQUE_CONSTRAINT = "uq_ledger_transactions_number"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


ledger_transaction_sources = Table(
    "ledger_transaction_sources",
    Base.metadata,
    Column(
        "ledger_transaction_id",
        Integer,
        ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "source_line_item_id",
        String,
        ForeignKey("source_line_items.id", ondelete="RESTRICT"),
        primary_key=True,
    ),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)


class SourceLineItemOrm(Base):
    __tablename__ = "source_line_items"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    reference_date: Mapped[date] = mapped_column(Date, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    ledger_transactions: Mapped[list["LedgerTransactionOrm"]] = relationship(
        secondary=ledger_transaction_sources, back_populates="source_line_items"
    )

    __table_args__ = (Index("ix_source_line_items_pending", "processed_at", "reference_date"),)


class LedgerTransactionOrm(Base):
    __tablename__ = "ledger_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Binary collation on MySQL so numbers differing only in case stay distinct.
    number: Mapped[str] = mapped_column(
        String(MAX_NUMBER_LENGTH).with_variant(mysql.VARCHAR(MAX_NUMBER_LENGTH, collation="utf8mb4_bin"), "mysql"),
        nullable=False,
    )
    reference_date: Mapped[date] = mapped_column(Date, nullable=False)
    document_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    direction: Mapped[str] = mapped_column(String(1), nullable=False)
    vat_rate: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    ledger_account: Mapped[str] = mapped_column(String, nullable=False)
    cost_center: Mapped[str | None] = mapped_column(String, nullable=True)
    cost_object: Mapped[str | None] = mapped_column(String, nullable=True)
    key: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    source_line_items: Mapped[list[SourceLineItemOrm]] = relationship(
        secondary=ledger_transaction_sources, back_populates="ledger_transactions", lazy="selectin"
    )

    __table_args__ = (
        Index(NUMBER_UNIQUE_CONSTRAINT, "number", unique=True),
        Index("ix_ledger_transactions_reference_date", "reference_date"),
        Index("ix_ledger_transactions_key", "key"),
    )
