"""Base exception for errors raised by the recurring engine."""


class RecurringEngineError(Exception):
    """Base exception for engine errors."""
    pass
