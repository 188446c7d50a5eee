from __future__ import annotations

from dataclasses import fields, replace
from datetime import datetime
import enum
import json
import struct
from typing import Any, TypeVar

import redis.asyncio as redis

from kb_ingest.config import Settings
from kb_ingest.storage.base import (
    ChunkRecord,
    DocumentRecord,
    DocumentStatus,
    PageRecord,
    PageStatus,
    SyncEntryStatus,
    SyncLogEntry,
    SyncLogRecord,
    SyncLogStatus,
    WebsiteNotFoundError,
    WebsiteRecord,
    WebsiteStatus,
)

T = TypeVar("T")

_STATUS_TYPES: dict[type, type[enum.Enum]] = {
    WebsiteRecord: WebsiteStatus,
    PageRecord: PageStatus,
    SyncLogRecord: SyncLogStatus,
    SyncLogEntry: SyncEntryStatus,
    DocumentRecord: DocumentStatus,
}
_DATETIME_FIELDS = {"last_sync", "scraped_at", "started_at", "completed_at"}


def vector_to_bytes(vector: list[float]) -> bytes:
    return struct.pack(f"{len(vector)}f", *vector)


def bytes_to_vector(data: bytes) -> list[float]:
    return list(struct.unpack(f"{len(data) // 4}f", data))


def _encode(value: object) -> str:
    if isinstance(value, enum.Enum):
        value = value.value
    if isinstance(value, datetime):
        value = value.isoformat()
    return json.dumps(value)


def _encode_fields(values: dict[str, Any]) -> dict[str, str]:
    return {name: _encode(value) for name, value in values.items()}


def _decode_record(cls: type[T], raw: dict[bytes, bytes]) -> T:
    values: dict[str, Any] = {}
    for item in fields(cls):  # type: ignore[arg-type]
        encoded = raw.get(item.name.encode())
        if encoded is None:
            continue
        value = json.loads(encoded)
        if item.name in _DATETIME_FIELDS and value:
            value = datetime.fromisoformat(value)
        elif item.name == "status" and cls in _STATUS_TYPES:
            value = _STATUS_TYPES[cls](value)
        values[item.name] = value
    return cls(**values)


class RedisStore:
    """Store backed by Redis hashes; ids come from one ``INCR`` sequence."""

    def __init__(self, client: redis.Redis, prefix: str | None = None) -> None:
        self._client = client
        self._prefix = prefix if prefix is not None else Settings.store_key_prefix

    @classmethod
    def from_url(cls, url: str | None = None) -> "RedisStore":
        return cls(redis.from_url(url or Settings.redis_url))

    def _key(self, *parts: str) -> str:
        return self._prefix + ":".join(parts)

    async def _next_id(self) -> str:
        return str(int(await self._client.incr(self._key("seq"))))

    async def _save(self, key: str, record: object, record_id: str) -> None:
        record = replace(record, id=record_id)  # type: ignore[type-var]
        values = {item.name: getattr(record, item.name) for item in fields(record)}
        await self._client.hset(key, mapping=_encode_fields(values))

    async def _update(self, key: str, cls: type, values: dict[str, Any]) -> None:
        unknown = set(values) - {item.name for item in fields(cls)}
        if unknown:
            raise AttributeError(f"Unknown fields: {', '.join(sorted(unknown))}")
        if values:
            await self._client.hset(key, mapping=_encode_fields(values))

    async def _load(self, cls: type[T], key: str) -> T | None:
        raw = await self._client.hgetall(key)
        if not raw:
            return None
        return _decode_record(cls, raw)

    # websites

    async def create_website(self, website: WebsiteRecord) -> str:
        website_id = await self._next_id()
        await self._save(self._key("website", website_id), website, website_id)
        return website_id

    async def get_website(self, website_id: str) -> WebsiteRecord | None:
        return await self._load(WebsiteRecord, self._key("website", website_id))

    async def update_website(self, website_id: str, **values: Any) -> None:
        key = self._key("website", website_id)
        if not await self._client.exists(key):
            raise WebsiteNotFoundError(f"Website not found: {website_id}")
        await self._update(key, WebsiteRecord, values)

    # sync logs

    async def create_sync_log(self, website_id: str) -> str:
        sync_log_id = await self._next_id()
        record = SyncLogRecord(website_id=website_id)
        await self._save(self._key("sync_log", sync_log_id), record, sync_log_id)
        await self._client.zadd(
            self._key("website", website_id, "sync_logs"),
            {sync_log_id: record.started_at.timestamp()},
        )
        return sync_log_id

    async def update_sync_log(self, sync_log_id: str, **values: Any) -> None:
        await self._update(self._key("sync_log", sync_log_id), SyncLogRecord, values)

    async def get_sync_log(self, sync_log_id: str) -> SyncLogRecord | None:
        return await self._load(SyncLogRecord, self._key("sync_log", sync_log_id))

    async def list_sync_logs(self, website_id: str) -> list[SyncLogRecord]:
        ids = await self._client.zrevrange(self._key("website", website_id, "sync_logs"), 0, -1)
        logs = [await self.get_sync_log(raw.decode()) for raw in ids]
        return [log for log in logs if log is not None]

    async def create_sync_log_entry(self, entry: SyncLogEntry) -> str:
        entry_id = await self._next_id()
        entry = replace(entry, id=entry_id)
        values = {item.name: getattr(entry, item.name) for item in fields(entry)}
        await self._client.rpush(
            self._key("sync_log", entry.sync_log_id, "entries"),
            json.dumps(_encode_fields(values)),
        )
        return entry_id

    async def list_sync_log_entries(self, sync_log_id: str) -> list[SyncLogEntry]:
        raw_entries = await self._client.lrange(
            self._key("sync_log", sync_log_id, "entries"), 0, -1
        )
        entries = []
        for raw in raw_entries:
            encoded = {key.encode(): value.encode() for key, value in json.loads(raw).items()}
            entries.append(_decode_record(SyncLogEntry, encoded))
        return entries

    # pages

    async def delete_pages(self, website_id: str) -> int:
        pages_key = self._key("website", website_id, "pages")
        page_ids = [raw.decode() for raw in await self._client.smembers(pages_key)]
        pipe = self._client.pipeline()
        for page_id in page_ids:
            documents_key = self._key("page", page_id, "documents")
            for raw_doc in await self._client.smembers(documents_key):
                document_id = raw_doc.decode()
                chunks_key = self._key("document", document_id, "chunks")
                for chunk_key in await self._client.lrange(chunks_key, 0, -1):
                    pipe.delete(chunk_key)
                pipe.delete(chunks_key, self._key("document", document_id))
            pipe.delete(documents_key, self._key("page", page_id))
        pipe.delete(pages_key)
        await pipe.execute()
        return len(page_ids)

    async def create_page(self, page: PageRecord) -> str:
        page_id = await self._next_id()
        await self._save(self._key("page", page_id), page, page_id)
        await self._client.sadd(self._key("website", page.website_id, "pages"), page_id)
        return page_id

    async def list_pages(self, website_id: str) -> list[PageRecord]:
        raw_ids = await self._client.smembers(self._key("website", website_id, "pages"))
        page_ids = sorted((raw.decode() for raw in raw_ids), key=int)
        pages = [await self._load(PageRecord, self._key("page", pid)) for pid in page_ids]
        return [page for page in pages if page is not None]

    # documents and chunks

    async def create_document(self, document: DocumentRecord) -> str:
        document_id = await self._next_id()
        await self._save(self._key("document", document_id), document, document_id)
        await self._client.sadd(self._key("page", document.page_id, "documents"), document_id)
        return document_id

    async def update_document(self, document_id: str, **values: Any) -> None:
        await self._update(self._key("document", document_id), DocumentRecord, values)

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        return await self._load(DocumentRecord, self._key("document", document_id))

    async def create_chunks(self, records: list[ChunkRecord]) -> int:
        pipe = self._client.pipeline()
        for record in records:
            chunk_key = self._key("chunk", record.document_id, str(record.chunk_index))
            pipe.hset(
                chunk_key,
                mapping={
                    "document_id": record.document_id,
                    "chunk_index": record.chunk_index,
                    "content": record.content,
                    "token_count": record.token_count,
                    "metadata": json.dumps(record.metadata),
                    "embedding": vector_to_bytes(record.embedding),
                },
            )
            pipe.rpush(self._key("document", record.document_id, "chunks"), chunk_key)
        await pipe.execute()
        return len(records)

    async def list_chunks(self, document_id: str) -> list[ChunkRecord]:
        chunk_keys = await self._client.lrange(self._key("document", document_id, "chunks"), 0, -1)
        chunks = []
        for chunk_key in chunk_keys:
            raw = await self._client.hgetall(chunk_key)
            if not raw:
                continue
            chunks.append(
                ChunkRecord(
                    document_id=raw[b"document_id"].decode(),
                    chunk_index=int(raw[b"chunk_index"]),
                    content=raw[b"content"].decode(),
                    embedding=bytes_to_vector(raw[b"embedding"]),
                    token_count=int(raw[b"token_count"]),
                    metadata=json.loads(raw[b"metadata"]),
                )
            )
        return sorted(chunks, key=lambda chunk: chunk.chunk_index)
