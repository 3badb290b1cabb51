"""Due-definition selection package."""

from recurring_engine.queries.selector import DueTransactionSelector

__all__ = ["DueTransactionSelector"]
