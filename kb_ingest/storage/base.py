"""Records and the store interface the sync job persists through."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import enum
from typing import Any, Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebsiteStatus(str, enum.Enum):
    PENDING = "PENDING"
    SYNCING = "SYNCING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class SyncLogStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SyncEntryStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    ALREADY_VISITED = "ALREADY_VISITED"


class PageStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class DocumentStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class WebsiteNotFoundError(LookupError):
    pass


@dataclass
class WebsiteRecord:
    url: str
    max_urls: int | None = None
    max_depth: int | None = None
    status: WebsiteStatus = WebsiteStatus.PENDING
    scraped_content: str = ""
    scraped_links: list[str] = field(default_factory=list)
    page_count: int = 0
    error_message: str | None = None
    last_sync: datetime | None = None
    id: str = ""


@dataclass
class PageRecord:
    website_id: str
    url: str
    title: str | None
    content: str
    links: list[str]
    status: PageStatus
    error_message: str | None = None
    status_code: int | None = None
    scraped_at: datetime = field(default_factory=utcnow)
    id: str = ""


@dataclass
class SyncLogRecord:
    website_id: str
    status: SyncLogStatus = SyncLogStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration: int | None = None
    total_urls: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    error_message: str | None = None
    id: str = ""


@dataclass
class SyncLogEntry:
    sync_log_id: str
    url: str
    status: SyncEntryStatus
    error_message: str | None = None
    content_size: int = 0
    status_code: int | None = None
    scraped_at: datetime = field(default_factory=utcnow)
    id: str = ""


@dataclass
class DocumentRecord:
    website_id: str
    page_id: str
    name: str
    url: str
    content_text: str
    status: DocumentStatus = DocumentStatus.PROCESSING
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = ""


@dataclass
class ChunkRecord:
    document_id: str
    chunk_index: int
    content: str
    embedding: list[float]
    token_count: int
    metadata: dict[str, Any] = field(default_factory=dict)


class Store(Protocol):
    async def create_website(self, website: WebsiteRecord) -> str: ...

    async def get_website(self, website_id: str) -> WebsiteRecord | None: ...

    async def update_website(self, website_id: str, **fields: Any) -> None: ...

    async def create_sync_log(self, website_id: str) -> str: ...

    async def update_sync_log(self, sync_log_id: str, **fields: Any) -> None: ...

    async def get_sync_log(self, sync_log_id: str) -> SyncLogRecord | None: ...

    async def list_sync_logs(self, website_id: str) -> list[SyncLogRecord]: ...

    async def create_sync_log_entry(self, entry: SyncLogEntry) -> str: ...

    async def list_sync_log_entries(self, sync_log_id: str) -> list[SyncLogEntry]: ...

    async def delete_pages(self, website_id: str) -> int: ...

    async def create_page(self, page: PageRecord) -> str: ...

    async def list_pages(self, website_id: str) -> list[PageRecord]: ...

    async def create_document(self, document: DocumentRecord) -> str: ...

    async def update_document(self, document_id: str, **fields: Any) -> None: ...

    async def get_document(self, document_id: str) -> DocumentRecord | None: ...

    async def create_chunks(self, records: list[ChunkRecord]) -> int: ...

    async def list_chunks(self, document_id: str) -> list[ChunkRecord]: ...
