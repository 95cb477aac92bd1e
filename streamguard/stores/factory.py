"""Store factories — backend selection and initialization.

Document store selection (config.storage.document_backend):
  memory → MemoryDocumentStore (default; nothing survives a restart)
  sqlite → SQLiteDocumentStore at config.storage.sqlite_path

Counter store selection (config.storage.counter_backend):
  memory → MemoryCounterStore (default; per-process windows)
  redis  → RedisCounterStore at config.storage.redis_url (shared windows)

SQLiteDocumentStore.initialize() raises RuntimeError on a schema version
mismatch; the FastAPI lifespan lets it propagate so startup is refused.
"""

from __future__ import annotations

from typing import Optional

from streamguard.config import Config
from streamguard.stores.memory import MemoryCounterStore, MemoryDocumentStore
from streamguard.stores.protocol import CounterStore, DocumentStore
from streamguard.utils.clock import Clock
from streamguard.utils.logger import get_logger

logger = get_logger(__name__)


async def create_document_store(config: Config) -> DocumentStore:
    """Create and initialize the configured DocumentStore."""
    backend = config.storage.document_backend
    store: DocumentStore
    if backend == "sqlite":
        from streamguard.stores.sqlite_store import SQLiteDocumentStore

        store = SQLiteDocumentStore(db_path=config.storage.sqlite_path)
    else:
        store = MemoryDocumentStore()

    await store.initialize()
    logger.info("document_store_selected", backend=type(store).__name__)
    return store


def create_counter_store(config: Config, clock: Optional[Clock] = None) -> CounterStore:
    """Create the configured CounterStore (connections are lazy)."""
    if config.storage.counter_backend == "redis":
        from streamguard.stores.redis_counter import RedisCounterStore

        store: CounterStore = RedisCounterStore(redis_url=config.storage.redis_url)
    else:
        store = MemoryCounterStore(clock=clock)

    logger.info("counter_store_selected", backend=type(store).__name__)
    return store
