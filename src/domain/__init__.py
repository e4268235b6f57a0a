"""Domain models and rules for turning sales line items into ledger transactions.

Pydantic models and pure aggregation logic live here, independent of the
SQLAlchemy persistence models so rules can be tested without a database.
"""

__all__ = [
    "aggregation_rules",
    "aggregator",
    "errors",
    "line_items",
    "transaction_numbers",
]
