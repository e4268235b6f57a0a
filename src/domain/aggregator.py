from __future__ import annotations

import logging
from datetime import date
from typing import Iterator

from .aggregation_rules import AggregatorConfig, RuleResolver
from .errors import AggregatorExhaustedError, DivergentAggregationError
from .line_items import AggregationRecord, GroupingKey, SourceLineItem

logger = logging.getLogger(__name__)

# Non-additive attributes that every item merged into one record must share.
MERGE_CHECKED_FIELDS = ("ledger_account", "document_type", "direction", "vat_rate")


class AggregationStore:
    """Accumulates records keyed by (reference_date, grouping_key)."""

    def __init__(self) -> None:
        self._records: dict[tuple[date, GroupingKey], AggregationRecord] = {}
        self._order: list[tuple[date, GroupingKey]] = []

    def __len__(self) -> int:
        return len(self._records)

    def add(self, incoming: AggregationRecord) -> AggregationRecord:
        key = incoming.key
        existing = self._records.get(key)
        if existing is None:
            self._records[key] = incoming
            self._order.append(key)
            return incoming

        _check_consistency(existing, incoming)
        existing.amount += incoming.amount
        existing.source_line_ids.extend(incoming.source_line_ids)
        return existing

    def records(self) -> Iterator[AggregationRecord]:
        """Yield records ordered by reference date, then first-seen grouping key."""
        first_seen = {key: index for index, key in enumerate(self._order)}
        for key in sorted(self._order, key=lambda k: (k[0], first_seen[k])):
            yield self._records[key]


def _check_consistency(existing: AggregationRecord, incoming: AggregationRecord) -> None:
    for field in MERGE_CHECKED_FIELDS:
        existing_value = getattr(existing, field)
        incoming_value = getattr(incoming, field)
        if existing_value != incoming_value:
            logger.error(
                "%s mismatch for %r on %s: aggregate=%r incoming=%r line_items=%s",
                field,
                existing.grouping_key,
                existing.reference_date.isoformat(),
                existing_value,
                incoming_value,
                incoming.source_line_ids,
            )
            raise DivergentAggregationError(
                field=field,
                reference_date=existing.reference_date,
                grouping_key=existing.grouping_key,
                existing=existing_value,
                incoming=incoming_value,
                line_item_ids=list(incoming.source_line_ids),
            )


class LineItemAggregator:
    """Groups line items into ledger-ready aggregation records.

    One instance serves exactly one processing run: feed every eligible item,
    then drain ``get_aggregated_records`` once.
    """

    def __init__(self, config: AggregatorConfig) -> None:
        logger.info("Initializing aggregator")
        self._resolver = RuleResolver(config)
        self._store = AggregationStore()
        self._drained = False

    def feed_line_item(self, item: SourceLineItem) -> None:
        if self._drained:
            raise AggregatorExhaustedError("Aggregator has already been drained; create a new one per run")
        self._store.add(self._resolver.resolve(item))

    def get_aggregated_records(self) -> Iterator[AggregationRecord]:
        if self._drained:
            raise AggregatorExhaustedError("Aggregated records can only be consumed once")
        self._drained = True
        return self._store.records()

    def __len__(self) -> int:
        return len(self._store)


__all__ = ["AggregationStore", "LineItemAggregator", "MERGE_CHECKED_FIELDS"]
