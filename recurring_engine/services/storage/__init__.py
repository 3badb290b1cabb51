"""
Storage Services Package

Provides the abstract storage contract the engine consumes and an
in-memory implementation. Real backends live in the app's adapter layer.
"""

from recurring_engine.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    NotFoundError,
    RecurringStorageInterface,
    StorageError,
)
from recurring_engine.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryRecurringStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "RecurringStorageInterface",
    # Exceptions
    "ConnectionError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryRecurringStorage",
]
