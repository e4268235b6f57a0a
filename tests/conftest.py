from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base
from domain.aggregation_rules import AggregatorConfig
from tests.constants import (
    CASH_ACCOUNT_ALICE,
    CASH_ACCOUNT_BOB,
    MASTERCARD_ACCOUNT,
    REVENUE_ACCOUNT,
)
from tests.helpers.line_items import DEFAULT_LINE_ITEMS, LineItemFactory

engine: Engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
session_factory = sessionmaker(engine)


@pytest.fixture(scope="function")
def test_session_factory() -> sessionmaker[Session]:
    return session_factory


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _reset_line_item_ids() -> None:
    DEFAULT_LINE_ITEMS.reset()


@pytest.fixture(scope="function")
def line_items() -> LineItemFactory:
    return DEFAULT_LINE_ITEMS


@pytest.fixture(scope="function")
def aggregator_config() -> AggregatorConfig:
    return AggregatorConfig(
        operator_ledger_accounts={"Alice": CASH_ACCOUNT_ALICE, "Bob": CASH_ACCOUNT_BOB, "Carol": ""},
        card_type_ledger_accounts={"MASTERCARD": MASTERCARD_ACCOUNT},
        card_type_document_types={"MASTERCARD": "MC"},
        ledger_accounts_with_vat_rate=[int(REVENUE_ACCOUNT), int(CASH_ACCOUNT_ALICE)],
    )
