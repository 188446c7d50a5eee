from __future__ import annotations

from dataclasses import replace
import itertools
from typing import Any, TypeVar

from kb_ingest.storage.base import (
    ChunkRecord,
    DocumentRecord,
    PageRecord,
    SyncLogEntry,
    SyncLogRecord,
    WebsiteNotFoundError,
    WebsiteRecord,
)

T = TypeVar("T")


def _apply(record: T, fields: dict[str, Any]) -> T:
    unknown = set(fields) - set(vars(record))
    if unknown:
        raise AttributeError(f"Unknown fields: {', '.join(sorted(unknown))}")
    return replace(record, **fields)


class MemoryStore:
    """Process-local store; state lives only as long as the instance."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.websites: dict[str, WebsiteRecord] = {}
        self.pages: dict[str, PageRecord] = {}
        self.sync_logs: dict[str, SyncLogRecord] = {}
        self.entries: dict[str, list[SyncLogEntry]] = {}
        self.documents: dict[str, DocumentRecord] = {}
        self.chunks: dict[str, list[ChunkRecord]] = {}

    def _next_id(self) -> str:
        return str(next(self._ids))

    async def create_website(self, website: WebsiteRecord) -> str:
        website_id = self._next_id()
        self.websites[website_id] = replace(website, id=website_id)
        return website_id

    async def get_website(self, website_id: str) -> WebsiteRecord | None:
        return self.websites.get(website_id)

    async def update_website(self, website_id: str, **fields: Any) -> None:
        website = self.websites.get(website_id)
        if website is None:
            raise WebsiteNotFoundError(f"Website not found: {website_id}")
        self.websites[website_id] = _apply(website, fields)

    async def create_sync_log(self, website_id: str) -> str:
        sync_log_id = self._next_id()
        self.sync_logs[sync_log_id] = SyncLogRecord(website_id=website_id, id=sync_log_id)
        self.entries[sync_log_id] = []
        return sync_log_id

    async def update_sync_log(self, sync_log_id: str, **fields: Any) -> None:
        self.sync_logs[sync_log_id] = _apply(self.sync_logs[sync_log_id], fields)

    async def get_sync_log(self, sync_log_id: str) -> SyncLogRecord | None:
        return self.sync_logs.get(sync_log_id)

    async def list_sync_logs(self, website_id: str) -> list[SyncLogRecord]:
        logs = [log for log in self.sync_logs.values() if log.website_id == website_id]
        return sorted(logs, key=lambda log: log.started_at, reverse=True)

    async def create_sync_log_entry(self, entry: SyncLogEntry) -> str:
        entry_id = self._next_id()
        self.entries.setdefault(entry.sync_log_id, []).append(replace(entry, id=entry_id))
        return entry_id

    async def list_sync_log_entries(self, sync_log_id: str) -> list[SyncLogEntry]:
        return list(self.entries.get(sync_log_id, []))

    async def delete_pages(self, website_id: str) -> int:
        page_ids = {pid for pid, page in self.pages.items() if page.website_id == website_id}
        for page_id in page_ids:
            del self.pages[page_id]
        doc_ids = [
            doc_id
            for doc_id, document in self.documents.items()
            if document.page_id in page_ids
        ]
        for doc_id in doc_ids:
            del self.documents[doc_id]
            self.chunks.pop(doc_id, None)
        return len(page_ids)

    async def create_page(self, page: PageRecord) -> str:
        page_id = self._next_id()
        self.pages[page_id] = replace(page, id=page_id)
        return page_id

    async def list_pages(self, website_id: str) -> list[PageRecord]:
        return [page for page in self.pages.values() if page.website_id == website_id]

    async def create_document(self, document: DocumentRecord) -> str:
        document_id = self._next_id()
        self.documents[document_id] = replace(document, id=document_id)
        return document_id

    async def update_document(self, document_id: str, **fields: Any) -> None:
        self.documents[document_id] = _apply(self.documents[document_id], fields)

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        return self.documents.get(document_id)

    async def create_chunks(self, records: list[ChunkRecord]) -> int:
        for record in records:
            self.chunks.setdefault(record.document_id, []).append(record)
        return len(records)

    async def list_chunks(self, document_id: str) -> list[ChunkRecord]:
        return sorted(self.chunks.get(document_id, []), key=lambda c: c.chunk_index)
