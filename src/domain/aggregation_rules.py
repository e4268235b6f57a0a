from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .errors import ConfigurationError, LineItemDataError
from .line_items import AggregationRecord, GroupingKey, LedgerAccount, LineItemId, PaymentDirection, SourceLineItem

logger = logging.getLogger(__name__)


class DataKeyConfig(BaseModel):
    """Names of the payload fields carrying each business attribute."""

    kind: str = "kind"
    accounting_code: str = "ACCOUNTING_CODE"
    operator_name: str = "OPERATOR_NAME"
    card_type: str = "CARD_TYPE"
    ledger_account: str = "ANALYTIC1"
    document_type: str = "DOCUMENT_TYPE"
    vat_rate: str = "VAT_RATE"
    payment_sale: str = "PAYMENT_SALE"
    amount: str = "AMOUNT"
    cost_center: str = "COST_CENTER"
    cost_object: str = "COST_OBJECT"


class AggregatorConfig(BaseModel):
    payment_kind_cash: str = "Bargeld"
    payment_kind_card: str = "Zahlkart"
    card_grouping_label: str = "Kartenzahlung"
    composed_product_kind: str = "COMPOSED_PRODUCT"
    operator_ledger_accounts: dict[str, str] = Field(default_factory=dict)
    card_type_ledger_accounts: dict[str, str] = Field(default_factory=dict)
    card_type_document_types: dict[str, str] = Field(default_factory=dict)
    ledger_accounts_with_vat_rate: frozenset[str] = frozenset()
    data_keys: DataKeyConfig = Field(default_factory=DataKeyConfig)

    @field_validator("ledger_accounts_with_vat_rate", mode="before")
    @classmethod
    def _normalize_vat_accounts(cls, value: Any) -> frozenset[str]:
        # Accounts often arrive as numbers from env/JSON config.
        if value is None:
            return frozenset()
        return frozenset(str(account) for account in value)

    @field_validator("operator_ledger_accounts", "card_type_ledger_accounts", "card_type_document_types", mode="before")
    @classmethod
    def _normalize_mapping(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        return {str(key): "" if account is None else str(account) for key, account in dict(value).items()}


class RuleResolver:
    """Maps a raw line item onto its grouping key and posting attributes.

    Pure: no I/O, driven only by the static ``AggregatorConfig``.
    """

    def __init__(self, config: AggregatorConfig) -> None:
        self._config = config
        self._keys = config.data_keys

    def resolve(self, item: SourceLineItem) -> AggregationRecord:
        grouping_key = self._grouping_key(item)
        try:
            return self._build_record(item, grouping_key)
        except LineItemDataError as exc:
            exc.grouping_key = grouping_key
            raise

    def _build_record(self, item: SourceLineItem, grouping_key: GroupingKey) -> AggregationRecord:
        data = item.data
        ledger_account = self._ledger_account(item)
        return AggregationRecord(
            reference_date=item.reference_date,
            grouping_key=grouping_key,
            ledger_account=ledger_account,
            document_type=self._document_type(item),
            direction=self._direction(item),
            amount=self._amount(item),
            vat_rate=self._vat_rate(item, ledger_account),
            source_line_ids=[LineItemId(item.id)],
            cost_center=_optional_str(data.get(self._keys.cost_center)),
            cost_object=_optional_str(data.get(self._keys.cost_object)),
        )

    def _kind(self, item: SourceLineItem) -> Any:
        return item.data.get(self._keys.kind)

    def _grouping_key(self, item: SourceLineItem) -> GroupingKey:
        kind = self._kind(item)
        if kind == self._config.payment_kind_cash:
            operator = item.data.get(self._keys.operator_name)
            return GroupingKey(f"{self._config.payment_kind_cash} {operator}")
        if kind == self._config.payment_kind_card:
            card_type = item.data.get(self._keys.card_type)
            return GroupingKey(f"{self._config.card_grouping_label} {card_type}")

        accounting_code = _optional_str(item.data.get(self._keys.accounting_code))
        if not accounting_code:
            raise LineItemDataError(
                "Missing accounting code", line_item_id=item.id, field=self._keys.accounting_code
            )
        return GroupingKey(accounting_code)

    def _ledger_account(self, item: SourceLineItem) -> LedgerAccount:
        kind = self._kind(item)
        if kind == self._config.payment_kind_cash:
            return self._ledger_account_for_operator(item.data.get(self._keys.operator_name))
        if kind == self._config.payment_kind_card:
            card_type = item.data.get(self._keys.card_type)
            mapped = self._config.card_type_ledger_accounts.get(str(card_type))
            if mapped:
                return LedgerAccount(mapped)
        return LedgerAccount(self._payload_str(item, self._keys.ledger_account))

    def _ledger_account_for_operator(self, operator: Any) -> LedgerAccount:
        ledger_account = self._config.operator_ledger_accounts.get(str(operator), "")
        if not ledger_account:
            logger.error("Missing ledger account mapping for operator %r", operator)
            raise ConfigurationError(
                f"Missing ledger account mapping for operator {operator!r}",
                setting="operator_ledger_accounts",
                value=operator,
            )
        return LedgerAccount(ledger_account)

    def _document_type(self, item: SourceLineItem) -> str:
        if self._kind(item) == self._config.payment_kind_card:
            card_type = item.data.get(self._keys.card_type)
            mapped = self._config.card_type_document_types.get(str(card_type))
            if mapped:
                return mapped
        return self._payload_str(item, self._keys.document_type)

    def _vat_rate(self, item: SourceLineItem, ledger_account: LedgerAccount) -> Decimal | None:
        # Gated on the resolved account, not the raw payload account.
        if ledger_account not in self._config.ledger_accounts_with_vat_rate:
            return None
        raw = item.data.get(self._keys.vat_rate)
        if raw is None or raw == "":
            return None
        try:
            return Decimal(str(raw))
        except InvalidOperation as exc:
            raise LineItemDataError(
                "Invalid VAT rate", line_item_id=item.id, field=self._keys.vat_rate, value=raw
            ) from exc

    def _amount(self, item: SourceLineItem) -> int:
        raw = item.data.get(self._keys.amount)
        try:
            amount = Decimal(str(raw))
        except InvalidOperation as exc:
            raise LineItemDataError("Invalid amount", line_item_id=item.id, field=self._keys.amount, value=raw) from exc
        if not amount.is_finite() or amount != amount.to_integral_value():
            raise LineItemDataError(
                "Amount must be an integral number of minor units",
                line_item_id=item.id,
                field=self._keys.amount,
                value=raw,
            )
        return int(amount)

    def _direction(self, item: SourceLineItem) -> PaymentDirection:
        raw = item.data.get(self._keys.payment_sale)
        try:
            return PaymentDirection(raw)
        except ValueError as exc:
            raise LineItemDataError(
                "Unknown payment direction", line_item_id=item.id, field=self._keys.payment_sale, value=raw
            ) from exc

    def _payload_str(self, item: SourceLineItem, field: str) -> str:
        value = _optional_str(item.data.get(field))
        if not value:
            raise LineItemDataError("Missing required field", line_item_id=item.id, field=field)
        return value


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = ["AggregatorConfig", "DataKeyConfig", "RuleResolver"]
