from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.orm import Session

from db.repositories import DEFAULT_PAGE_SIZE, SourceLineItemRepository
from domain.aggregation_rules import AggregatorConfig
from domain.aggregator import LineItemAggregator
from domain.line_items import AggregationRecord

logger = logging.getLogger(__name__)


def preview_aggregation(
    session: Session,
    config: AggregatorConfig,
    start: date,
    end: date,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> list[AggregationRecord]:
    """Aggregate every line item in [start, end] without writing anything.

    Processed items are included, so the result shows how a period would be
    booked from scratch.
    """
    if end < start:
        msg = "end must not be before start"
        raise ValueError(msg)

    aggregator = LineItemAggregator(config)
    repository = SourceLineItemRepository(session)
    skipped = 0
    for item in repository.iter_between(start, end, page_size=page_size):
        if item.is_composed_product(config.data_keys.kind, config.composed_product_kind):
            skipped += 1
            continue
        aggregator.feed_line_item(item)

    records = list(aggregator.get_aggregated_records())
    logger.info(
        "Previewed %d aggregates for %s..%s (%d composed products skipped)",
        len(records),
        start.isoformat(),
        end.isoformat(),
        skipped,
    )
    return records
