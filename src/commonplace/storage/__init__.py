"""Storage layer: the entry store backends."""

from commonplace.config.schema import StorageConfig
from commonplace.storage.base import (
    EntryStore,
    JoinUpdate,
    ListOrder,
    StorageError,
    VersionConflict,
)


def create_entry_store(config: StorageConfig) -> EntryStore:
    """Factory function to create entry stores based on configuration.

    Args:
        config: Storage configuration with store_type

    Returns:
        Uninitialized entry store; call ``await store.initialize()``

    Raises:
        ValueError: If store_type is unknown
        StorageError: If dependencies are missing

    Example:
        config = StorageConfig(
            store_type="sqlite",
            connection_string="sqlite:///~/.commonplace/entries.db",
        )
        store = create_entry_store(config)
        await store.initialize()
    """
    store_type = config.store_type.value.lower()

    if store_type == "memory":
        from commonplace.storage.memory import InMemoryEntryStore

        return InMemoryEntryStore(config)

    elif store_type == "sqlite":
        try:
            from commonplace.storage.sqlite import SQLiteEntryStore

            return SQLiteEntryStore(config)
        except ImportError as e:
            raise StorageError(
                message="SQLite entry store requires aiosqlite. Install with: pip install aiosqlite",
                storage_type="sqlite",
                original_error=e,
            )

    else:
        raise ValueError(
            f"Unknown entry store type: '{store_type}'. Supported types: memory, sqlite"
        )


__all__ = [
    "EntryStore",
    "JoinUpdate",
    "ListOrder",
    "StorageConfig",
    "StorageError",
    "VersionConflict",
    "create_entry_store",
]
