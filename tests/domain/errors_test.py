from datetime import date

from sqlalchemy.exc import IntegrityError, OperationalError

from domain.errors import (
    ConfigurationError,
    DivergentAggregationError,
    ErrorKind,
    LineItemDataError,
    classify_error,
)


def test_domain_errors_carry_their_kind() -> None:
    divergent = DivergentAggregationError(
        field="vat_rate",
        reference_date=date(2021, 10, 31),
        grouping_key="TK-OPERA",
        existing="7.7",
        incoming=None,
        line_item_ids=["00000002"],
    )

    assert classify_error(ConfigurationError("missing", setting="operator_ledger_accounts")) == ErrorKind.CONFIGURATION
    assert classify_error(divergent) == ErrorKind.DATA_INTEGRITY
    assert classify_error(LineItemDataError("bad", line_item_id="1", field="AMOUNT")) == ErrorKind.DATA_INTEGRITY
    assert "vat_rate mismatch for 'TK-OPERA' on 2021-10-31" in str(divergent)


def test_storage_errors_are_transient_except_integrity() -> None:
    operational = OperationalError("SELECT 1", {}, Exception("database is locked"))
    integrity = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    assert classify_error(operational) == ErrorKind.TRANSIENT
    assert classify_error(integrity) == ErrorKind.DATA_INTEGRITY
    assert classify_error(ConnectionResetError()) == ErrorKind.TRANSIENT
