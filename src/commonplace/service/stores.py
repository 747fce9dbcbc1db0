"""Store initialization service.

Provides a helper for creating and initializing the entry store.
"""

from commonplace.config.loader import load_config
from commonplace.config.schema import AppConfig
from commonplace.storage import create_entry_store
from commonplace.storage.base import EntryStore


async def initialize_store(config: AppConfig | None = None, config_path: str | None = None) -> EntryStore:
    """Create the configured entry store and initialize it.

    Args:
        config: Loaded configuration; read from ``config_path`` when omitted
        config_path: Optional path to config file

    Returns:
        Ready-to-use entry store
    """
    if config is None:
        config = load_config(config_path=config_path)

    store = create_entry_store(config.storage)
    await store.initialize()
    return store
