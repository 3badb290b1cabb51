"""Services package."""

from recurring_engine.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    InMemoryAuditStorage,
    InMemoryRecurringStorage,
    NotFoundError,
    RecurringStorageInterface,
    StorageError,
)

__all__ = [
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "InMemoryAuditStorage",
    "InMemoryRecurringStorage",
    "NotFoundError",
    "RecurringStorageInterface",
    "StorageError",
]
