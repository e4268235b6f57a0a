from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, NewType

from pydantic import BaseModel, Field, model_validator

LineItemId = NewType("LineItemId", str)
GroupingKey = NewType("GroupingKey", str)
LedgerAccount = NewType("LedgerAccount", str)


class PaymentDirection(StrEnum):
    """Posting side of a ledger transaction as the ledger system encodes it."""

    PAYMENT = "P"
    SALE = "S"


class SourceLineItem(BaseModel):
    """One raw sale/refund row as imported from the ticketing platform.

    Only ``processed_at`` is ever changed after import, and only once.
    """

    id: LineItemId
    reference_date: date
    data: dict[str, Any]
    processed_at: datetime | None = None

    @model_validator(mode="after")
    def _validate_id(self) -> SourceLineItem:
        if not self.id:
            raise ValueError("SourceLineItem.id must be non-empty")
        return self

    def is_composed_product(self, kind_key: str, composed_kind: str) -> bool:
        return self.data.get(kind_key) == composed_kind


class AggregationRecord(BaseModel):
    """In-memory sum of all line items sharing (reference_date, grouping_key).

    Amount is in minor currency units and is the only additive field; the
    posting attributes must agree across every merged item.
    """

    reference_date: date
    grouping_key: GroupingKey
    ledger_account: LedgerAccount
    document_type: str
    direction: PaymentDirection
    amount: int
    vat_rate: Decimal | None = None
    source_line_ids: list[LineItemId] = Field(default_factory=list)
    cost_center: str | None = None
    cost_object: str | None = None

    @property
    def key(self) -> tuple[date, GroupingKey]:
        return self.reference_date, self.grouping_key


class LedgerTransaction(BaseModel):
    id: int | None = None
    number: str
    reference_date: date
    document_type: str
    amount: int
    direction: PaymentDirection
    vat_rate: Decimal | None = None
    ledger_account: LedgerAccount
    cost_center: str | None = None
    cost_object: str | None = None
    source_line_ids: list[LineItemId] = Field(default_factory=list)
    key: str | None = None
    created_at: datetime | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> LedgerTransaction:
        # Net-zero aggregates never become ledger rows.
        if self.amount == 0:
            raise ValueError("LedgerTransaction.amount must be non-zero")
        if not self.number:
            raise ValueError("LedgerTransaction.number must be non-empty")
        return self
