"""Data stores for persistence.

Stores handle:
- SQLite: store file, interactive/writer contexts, lightweight migration

No presentation or network logic in stores - that belongs in services.
"""

from modelkit.stores.sqlite import (
    AlreadyInitializedError,
    CannotCreateModelError,
    MigrationError,
    StoreError,
    StoreManager,
    StoreNotInitializedError,
    data_store,
)

__all__ = [
    "AlreadyInitializedError",
    "CannotCreateModelError",
    "MigrationError",
    "StoreError",
    "StoreManager",
    "StoreNotInitializedError",
    "data_store",
]
