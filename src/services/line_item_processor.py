from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from db.repositories import (
    DEFAULT_PAGE_SIZE,
    LedgerTransactionRepository,
    SourceLineItemRepository,
    is_number_collision,
)
from domain.aggregation_rules import AggregatorConfig
from domain.aggregator import LineItemAggregator
from domain.errors import ErrorKind, LineItemDataError, classify_error
from domain.line_items import AggregationRecord, GroupingKey, LedgerTransaction, LineItemId
from domain.transaction_numbers import build_transaction_number, random_suffix

from .retry import call_with_retry

logger = logging.getLogger(__name__)

# One regular attempt plus one retry after a number collision.
DEFAULT_NUMBER_ATTEMPTS = 2

# Error kinds that abort the whole run instead of a single aggregate.
RUN_FATAL_ERROR_KINDS = frozenset({ErrorKind.CONFIGURATION, ErrorKind.TRANSIENT})

RejectedItems = dict[tuple[date, GroupingKey | None], list[LineItemDataError]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FailedAggregate(BaseModel):
    reference_date: date
    grouping_key: str | None
    source_line_ids: list[LineItemId]
    error: str


class ProcessingSummary(BaseModel):
    cutoff: date
    fetched: int = 0
    ignored: int = 0
    rejected: int = 0
    aggregates: int = 0
    committed: list[str] = Field(default_factory=list)
    zero_amount: int = 0
    failed: list[FailedAggregate] = Field(default_factory=list)


class LineItemProcessor:
    """Turns unprocessed line items into ledger transactions.

    Each run fetches eligible items, aggregates them with a fresh
    ``LineItemAggregator`` and commits every aggregate in its own database
    transaction. A failing aggregate is logged and skipped; its items stay
    unprocessed for the next run. A line item with unusable data fails only
    the aggregate it belongs to. Configuration and divergent-aggregation
    errors raised while aggregating abort the whole run before any write, and
    configuration or transient storage errors raised while committing abort
    the remaining run.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        aggregator_config: AggregatorConfig,
        *,
        suffix_generator: Callable[[], str] = random_suffix,
        page_size: int = DEFAULT_PAGE_SIZE,
        number_attempts: int = DEFAULT_NUMBER_ATTEMPTS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._config = aggregator_config
        self._suffix_generator = suffix_generator
        self._page_size = page_size
        self._number_attempts = number_attempts
        self._clock = clock

    def execute(self, cutoff: date | datetime | None = None) -> ProcessingSummary:
        cutoff_date = self._resolve_cutoff(cutoff)
        summary = ProcessingSummary(cutoff=cutoff_date)
        aggregator = LineItemAggregator(self._config)
        rejected: RejectedItems = {}

        logger.info("Fetching unprocessed line items with reference date <= %s", cutoff_date.isoformat())
        ignored_ids = self._fetch_and_aggregate(aggregator, cutoff_date, summary, rejected)
        logger.info(
            "Aggregated %d line items into %d aggregates (%d composed products ignored, %d rejected)",
            summary.fetched - summary.ignored - summary.rejected,
            len(aggregator),
            summary.ignored,
            summary.rejected,
        )

        if ignored_ids:
            with self._session_factory.begin() as session:
                SourceLineItemRepository(session).mark_processed(ignored_ids, processed_at=self._clock())
            logger.info("Marked %d composed product line items as processed", len(ignored_ids))

        for record in aggregator.get_aggregated_records():
            summary.aggregates += 1
            errors = rejected.pop(record.key, None)
            if errors:
                self._record_failure(
                    summary,
                    record.reference_date,
                    record.grouping_key,
                    [*record.source_line_ids, *(LineItemId(e.line_item_id) for e in errors)],
                    "; ".join(str(e) for e in errors),
                )
                continue
            self._process_aggregate(record, summary)

        # Groups where every item was rejected, plus items with no resolvable group.
        for (reference_date, grouping_key), errors in rejected.items():
            self._record_failure(
                summary,
                reference_date,
                grouping_key,
                [LineItemId(e.line_item_id) for e in errors],
                "; ".join(str(e) for e in errors),
            )

        logger.info(
            "Processing done: %d transactions created, %d net-zero aggregates, %d failed aggregates",
            len(summary.committed),
            summary.zero_amount,
            len(summary.failed),
        )
        return summary

    def _resolve_cutoff(self, cutoff: date | datetime | None) -> date:
        if cutoff is None:
            return self._clock().date()
        if isinstance(cutoff, datetime):
            return cutoff.date()
        return cutoff

    def _fetch_and_aggregate(
        self,
        aggregator: LineItemAggregator,
        cutoff: date,
        summary: ProcessingSummary,
        rejected: RejectedItems,
    ) -> list[LineItemId]:
        ignored_ids: list[LineItemId] = []
        keys = self._config.data_keys
        with self._session_factory() as session:
            repository = SourceLineItemRepository(session)
            for item in repository.iter_unprocessed(cutoff, page_size=self._page_size):
                summary.fetched += 1
                if item.is_composed_product(keys.kind, self._config.composed_product_kind):
                    ignored_ids.append(item.id)
                    continue
                try:
                    aggregator.feed_line_item(item)
                except LineItemDataError as exc:
                    logger.warning("Rejecting line item %s: %s", item.id, exc)
                    group = (item.reference_date, GroupingKey(exc.grouping_key) if exc.grouping_key else None)
                    rejected.setdefault(group, []).append(exc)
                    summary.rejected += 1
        summary.ignored = len(ignored_ids)
        return ignored_ids

    def _process_aggregate(self, record: AggregationRecord, summary: ProcessingSummary) -> None:
        try:
            transaction = self._commit_aggregate(record)
        except Exception as exc:
            if classify_error(exc) in RUN_FATAL_ERROR_KINDS:
                raise
            logger.exception(
                "Failed to commit aggregate %r for %s (%d line items); leaving them unprocessed",
                record.grouping_key,
                record.reference_date.isoformat(),
                len(record.source_line_ids),
            )
            summary.failed.append(
                FailedAggregate(
                    reference_date=record.reference_date,
                    grouping_key=record.grouping_key,
                    source_line_ids=list(record.source_line_ids),
                    error=str(exc),
                )
            )
            return

        if transaction is None:
            summary.zero_amount += 1
            logger.info(
                "Aggregate %r for %s nets to zero; marked %d line items processed without a transaction",
                record.grouping_key,
                record.reference_date.isoformat(),
                len(record.source_line_ids),
            )
        else:
            summary.committed.append(transaction.number)

    @staticmethod
    def _record_failure(
        summary: ProcessingSummary,
        reference_date: date,
        grouping_key: str | None,
        source_line_ids: list[LineItemId],
        error: str,
    ) -> None:
        logger.error(
            "Skipping aggregate %r for %s: %d line items carry invalid data; leaving them unprocessed",
            grouping_key,
            reference_date.isoformat(),
            len(source_line_ids),
        )
        summary.failed.append(
            FailedAggregate(
                reference_date=reference_date,
                grouping_key=grouping_key,
                source_line_ids=source_line_ids,
                error=error,
            )
        )

    def _commit_aggregate(self, record: AggregationRecord) -> LedgerTransaction | None:
        if record.amount == 0:
            with self._session_factory.begin() as session:
                SourceLineItemRepository(session).mark_processed(record.source_line_ids, processed_at=self._clock())
            return None

        def attempt(attempt_no: int) -> LedgerTransaction:
            number = build_transaction_number(record.grouping_key, self._suffix_generator())
            with self._session_factory.begin() as session:
                transaction = LedgerTransactionRepository(session).create(record, number)
                SourceLineItemRepository(session).mark_processed(record.source_line_ids, processed_at=self._clock())
            logger.debug("Created transaction %r on attempt %d", number, attempt_no)
            return transaction

        def on_retry(attempt_no: int, exc: Exception) -> None:
            logger.warning(
                "Transaction number collision for %r on attempt %d, regenerating suffix",
                record.grouping_key,
                attempt_no,
            )

        return call_with_retry(
            attempt,
            attempts=self._number_attempts,
            should_retry=is_number_collision,
            on_retry=on_retry,
        )


__all__ = ["FailedAggregate", "LineItemProcessor", "ProcessingSummary"]
