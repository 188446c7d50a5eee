"""Storage subpackage: persistence for websites, pages, sync logs and chunks."""

from kb_ingest.config import Settings
from kb_ingest.storage.base import (
    ChunkRecord,
    DocumentRecord,
    DocumentStatus,
    PageRecord,
    PageStatus,
    Store,
    SyncEntryStatus,
    SyncLogEntry,
    SyncLogRecord,
    SyncLogStatus,
    WebsiteNotFoundError,
    WebsiteRecord,
    WebsiteStatus,
)
from kb_ingest.storage.memory import MemoryStore
from kb_ingest.storage.redis_store import RedisStore, bytes_to_vector, vector_to_bytes


def create_store(backend: str | None = None) -> Store:
    backend = (backend or Settings.store_backend).lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "redis":
        return RedisStore.from_url()
    raise ValueError(f"Unknown store backend: {backend}")


__all__ = [
    # base
    "ChunkRecord",
    "DocumentRecord",
    "DocumentStatus",
    "PageRecord",
    "PageStatus",
    "Store",
    "SyncEntryStatus",
    "SyncLogEntry",
    "SyncLogRecord",
    "SyncLogStatus",
    "WebsiteNotFoundError",
    "WebsiteRecord",
    "WebsiteStatus",
    # backends
    "MemoryStore",
    "RedisStore",
    "bytes_to_vector",
    "create_store",
    "vector_to_bytes",
]
