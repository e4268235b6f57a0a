from __future__ import annotations

from datetime import date
from enum import StrEnum
from typing import Any

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError


class ErrorKind(StrEnum):
    CONFIGURATION = "CONFIGURATION"
    DATA_INTEGRITY = "DATA_INTEGRITY"
    TRANSIENT = "TRANSIENT"


class ProcessingError(Exception):
    kind: ErrorKind = ErrorKind.DATA_INTEGRITY


class ConfigurationError(ProcessingError):
    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, *, setting: str, value: Any | None = None) -> None:
        super().__init__(message)
        self.setting = setting
        self.value = value


class LineItemDataError(ProcessingError):
    """A single line item carries unusable data.

    ``grouping_key`` is set once the item's group is known, so the failure can
    be pinned to that aggregate instead of the whole run.
    """

    def __init__(
        self,
        message: str,
        *,
        line_item_id: str,
        field: str,
        value: Any | None = None,
        grouping_key: str | None = None,
    ) -> None:
        super().__init__(f"{message} (line_item={line_item_id} field={field} value={value!r})")
        self.line_item_id = line_item_id
        self.field = field
        self.value = value
        self.grouping_key = grouping_key


class DivergentAggregationError(ProcessingError):
    def __init__(
        self,
        *,
        field: str,
        reference_date: date,
        grouping_key: str,
        existing: Any,
        incoming: Any,
        line_item_ids: list[str],
    ) -> None:
        self.field = field
        self.reference_date = reference_date
        self.grouping_key = grouping_key
        self.existing = existing
        self.incoming = incoming
        self.line_item_ids = line_item_ids
        message = (
            f"{field} mismatch for {grouping_key!r} on {reference_date.isoformat()}: "
            f"aggregate has {existing!r}, line items {line_item_ids} have {incoming!r}"
        )
        super().__init__(message)


class AggregatorExhaustedError(ProcessingError):
    kind = ErrorKind.CONFIGURATION


class InvalidationError(ProcessingError):
    def __init__(self, message: str, *, transaction_number: str, key: str | None = None) -> None:
        super().__init__(message)
        self.transaction_number = transaction_number
        self.key = key


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, ProcessingError):
        return exc.kind
    if isinstance(exc, IntegrityError):
        return ErrorKind.DATA_INTEGRITY
    if isinstance(exc, (OperationalError, DBAPIError, ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.DATA_INTEGRITY


__all__ = [
    "AggregatorExhaustedError",
    "ConfigurationError",
    "DivergentAggregationError",
    "ErrorKind",
    "InvalidationError",
    "LineItemDataError",
    "ProcessingError",
    "classify_error",
]
