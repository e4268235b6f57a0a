from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from db.repositories import LedgerTransactionRepository, SourceLineItemRepository, is_number_collision
from domain.line_items import AggregationRecord, GroupingKey, LedgerAccount, LineItemId, PaymentDirection
from tests.constants import MONDAY, SATURDAY, SUNDAY
from tests.helpers.line_items import LineItemFactory


def _record(*item_ids: str) -> AggregationRecord:
    return AggregationRecord(
        reference_date=SUNDAY,
        grouping_key=GroupingKey("TK-OPERA"),
        ledger_account=LedgerAccount("3200"),
        document_type="VK",
        direction=PaymentDirection.SALE,
        amount=-4200,
        vat_rate=Decimal("7.7"),
        source_line_ids=[LineItemId(item_id) for item_id in item_ids],
        cost_center="410",
    )


@pytest.fixture()
def item_repo(test_session: Session) -> SourceLineItemRepository:
    return SourceLineItemRepository(test_session)


@pytest.fixture()
def tx_repo(test_session: Session) -> LedgerTransactionRepository:
    return LedgerTransactionRepository(test_session)


def test_iter_unprocessed_filters_and_pages_by_id(
    item_repo: SourceLineItemRepository, line_items: LineItemFactory
) -> None:
    items = [line_items.sale("TK-OPERA", 100, reference_date=SUNDAY) for _ in range(5)]
    items.append(line_items.sale("TK-OPERA", 100, reference_date=MONDAY))
    items[1].processed_at = datetime(2021, 11, 1, tzinfo=timezone.utc)
    item_repo.add_many(reversed(items))

    fetched = list(item_repo.iter_unprocessed(SUNDAY, page_size=2))

    assert [item.id for item in fetched] == ["00000001", "00000003", "00000004", "00000005"]


def test_iter_between_includes_processed_items(
    item_repo: SourceLineItemRepository, line_items: LineItemFactory
) -> None:
    processed = line_items.sale("TK-OPERA", 100, reference_date=SATURDAY)
    processed.processed_at = datetime(2021, 11, 1, tzinfo=timezone.utc)
    item_repo.add_many([processed, line_items.sale("TK-OPERA", 100, reference_date=MONDAY)])

    fetched = list(item_repo.iter_between(SATURDAY, SUNDAY))

    assert [item.id for item in fetched] == [processed.id]
    assert fetched[0].processed_at == processed.processed_at


def test_mark_and_reset_processed(item_repo: SourceLineItemRepository, line_items: LineItemFactory) -> None:
    first, second = line_items.sale("TK-OPERA", 100), line_items.sale("TK-OPERA", 100)
    item_repo.add_many([first, second])
    processed_at = datetime(2021, 11, 2, 9, 0, tzinfo=timezone.utc)

    assert item_repo.mark_processed([first.id], processed_at=processed_at) == 1
    assert item_repo.mark_processed([]) == 0

    reloaded = item_repo.get(first.id)
    assert reloaded is not None
    assert reloaded.processed_at == processed_at
    assert [item.id for item in item_repo.iter_unprocessed(SUNDAY)] == [second.id]

    item_repo.reset_processed([first.id])
    assert len(list(item_repo.iter_unprocessed(SUNDAY))) == 2


def test_create_transaction_links_sources(
    item_repo: SourceLineItemRepository, tx_repo: LedgerTransactionRepository, line_items: LineItemFactory
) -> None:
    first, second = line_items.sale("TK-OPERA", -2100), line_items.sale("TK-OPERA", -2100)
    item_repo.add_many([first, second])

    created = tx_repo.create(_record(first.id, second.id), "TK-OPERA aB3x")

    assert created.id is not None
    assert created.number == "TK-OPERA aB3x"
    assert created.amount == -4200
    assert created.vat_rate == Decimal("7.7")
    assert created.direction == PaymentDirection.SALE
    assert created.cost_center == "410"
    assert created.source_line_ids == [first.id, second.id]
    assert tx_repo.get_by_number("TK-OPERA aB3x") == created
    assert [tx.number for tx in tx_repo.list_for_line_items([second.id])] == ["TK-OPERA aB3x"]


def test_create_rejects_unknown_line_items(tx_repo: LedgerTransactionRepository) -> None:
    with pytest.raises(LookupError):
        tx_repo.create(_record("missing"), "TK-OPERA aB3x")


def test_duplicate_number_is_a_collision(
    test_session: Session,
    item_repo: SourceLineItemRepository,
    tx_repo: LedgerTransactionRepository,
    line_items: LineItemFactory,
) -> None:
    first, second = line_items.sale("TK-OPERA", -4200), line_items.sale("TK-OPERA", -4200)
    item_repo.add_many([first, second])
    tx_repo.create(_record(first.id), "TK-OPERA aB3x")

    with pytest.raises(IntegrityError) as excinfo:
        tx_repo.create(_record(second.id), "TK-OPERA aB3x")

    assert is_number_collision(excinfo.value)
    test_session.rollback()


def test_numbers_differing_in_case_are_distinct(
    item_repo: SourceLineItemRepository, tx_repo: LedgerTransactionRepository, line_items: LineItemFactory
) -> None:
    first, second = line_items.sale("TK-OPERA", -4200), line_items.sale("TK-OPERA", -4200)
    item_repo.add_many([first, second])

    tx_repo.create(_record(first.id), "TK-OPERA ab3x")
    tx_repo.create(_record(second.id), "TK-OPERA AB3X")

    assert [tx.number for tx in tx_repo.list()] == ["TK-OPERA ab3x", "TK-OPERA AB3X"]


def test_other_errors_are_not_collisions() -> None:
    assert not is_number_collision(ValueError("UNIQUE constraint failed: ledger_transactions.number"))


def test_delete_transaction_keeps_line_items(
    item_repo: SourceLineItemRepository, tx_repo: LedgerTransactionRepository, line_items: LineItemFactory
) -> None:
    item = line_items.sale("TK-OPERA", -4200)
    item_repo.add_many([item])
    created = tx_repo.create(_record(item.id), "TK-OPERA aB3x")
    assert created.id is not None

    tx_repo.delete(created.id)

    assert tx_repo.list() == []
    assert item_repo.get(item.id) is not None


def test_reloaded_transaction_keeps_utc_timestamp(
    test_session_factory: sessionmaker[Session], line_items: LineItemFactory
) -> None:
    item = line_items.sale("TK-OPERA", -4200)
    with test_session_factory.begin() as session:
        SourceLineItemRepository(session).add_many([item])
        created = LedgerTransactionRepository(session).create(_record(item.id), "TK-OPERA aB3x")

    with test_session_factory() as session:
        reloaded = LedgerTransactionRepository(session).get_by_number("TK-OPERA aB3x")

    assert reloaded is not None
    assert reloaded.created_at is not None
    assert reloaded.created_at.tzinfo == timezone.utc
    assert reloaded == created
