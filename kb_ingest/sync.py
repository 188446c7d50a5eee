"""Website sync job: crawl, persist, chunk and embed one website.

A job moves the website PENDING/COMPLETED/ERROR -> SYNCING -> COMPLETED or
ERROR and records one sync log with an entry per fetched URL. A job with at
least one successful page is COMPLETED even when other pages failed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import time
from typing import Awaitable, Callable

from kb_ingest.config import Settings
from kb_ingest.index.chunker import ChunkOptions, chunk_page
from kb_ingest.index.embeddings import EmbeddingProvider, embed_texts
from kb_ingest.ingest.crawler import CrawlResult, CrawlTarget, crawl_site
from kb_ingest.ingest.fetcher import CrawledPage
from kb_ingest.monitoring.logging_utils import get_event_logger, get_logger
from kb_ingest.monitoring.metrics import (
    record_chunks,
    record_crawl,
    record_embed_failure,
    record_sync,
)
from kb_ingest.storage.base import (
    ChunkRecord,
    DocumentRecord,
    DocumentStatus,
    PageRecord,
    PageStatus,
    Store,
    SyncEntryStatus,
    SyncLogEntry,
    SyncLogStatus,
    WebsiteNotFoundError,
    WebsiteStatus,
    utcnow,
)

LOGGER = get_logger("sync")

Crawler = Callable[..., Awaitable[CrawlResult]]


@dataclass
class SyncSummary:
    website_id: str
    sync_log_id: str | None
    status: WebsiteStatus
    total_urls: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    chunks_created: int = 0
    error: str | None = None


def entry_status(page: CrawledPage) -> SyncEntryStatus:
    if page.error:
        return SyncEntryStatus.FAILED
    if page.content.strip():
        return SyncEntryStatus.SUCCESS
    return SyncEntryStatus.SKIPPED


async def _cancel_tasks(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


class WebsiteIngestor:
    def __init__(
        self,
        store: Store,
        embedder: EmbeddingProvider | None = None,
        crawler: Crawler = crawl_site,
        chunk_options: ChunkOptions | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.crawler = crawler
        self.chunk_options = chunk_options or ChunkOptions.from_settings()
        self._background_tasks: set[asyncio.Task] = set()

    def start(self, website_id: str, url: str | None = None) -> asyncio.Task:
        """Run a sync in the background; results are only visible in the store."""
        task = asyncio.create_task(self.run(website_id, url))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def run(self, website_id: str, url: str | None = None) -> SyncSummary:
        started = time.monotonic()
        sync_log_id: str | None = None
        try:
            sync_log_id = await self.store.create_sync_log(website_id)
            await self.store.update_website(
                website_id, status=WebsiteStatus.SYNCING, last_sync=utcnow()
            )
            website = await self.store.get_website(website_id)
            if website is None:
                raise WebsiteNotFoundError(f"Website not found: {website_id}")
            removed = await self.store.delete_pages(website_id)

            target = CrawlTarget(
                seed_url=url or website.url,
                max_pages=website.max_urls or Settings.crawl_max_pages,
                max_depth=(
                    website.max_depth
                    if website.max_depth is not None
                    else Settings.crawl_max_depth
                ),
            )
            log_event = get_event_logger("sync", website=website_id)
            log_event(
                "start",
                url=target.seed_url,
                max_pages=target.max_pages,
                max_depth=target.max_depth,
                removed=removed,
            )
            result = await self.crawler(
                target, deadline=time.monotonic() + Settings.sync_timeout_s
            )
            summary = await self._persist(website_id, sync_log_id, result, started)
            log_event(
                "done",
                status=summary.status.value,
                total=summary.total_urls,
                ok=summary.success_count,
                failed=summary.failed_count,
                skipped=summary.skipped_count,
                chunks=summary.chunks_created,
                elapsed_s=round(time.monotonic() - started, 2),
            )
            return summary
        except asyncio.CancelledError:
            LOGGER.warning("Sync cancelled for website %s", website_id)
            await self._mark_failed(website_id, sync_log_id, "Sync cancelled", started)
            raise
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            LOGGER.exception("Sync failed for website %s", website_id)
            await self._mark_failed(website_id, sync_log_id, message, started)
            return SyncSummary(
                website_id=website_id,
                sync_log_id=sync_log_id,
                status=WebsiteStatus.ERROR,
                error=message,
            )

    async def _persist(
        self,
        website_id: str,
        sync_log_id: str,
        result: CrawlResult,
        started: float,
    ) -> SyncSummary:
        summary = SyncSummary(
            website_id=website_id,
            sync_log_id=sync_log_id,
            status=WebsiteStatus.ERROR,
            total_urls=len(result.pages),
        )
        index_tasks: list[asyncio.Task] = []
        try:
            await self._record_pages(sync_log_id, result, summary, index_tasks)
            summary.chunks_created = sum(await asyncio.gather(*index_tasks))
        except BaseException:
            # A job that stops here must not keep writing documents afterwards.
            await _cancel_tasks(index_tasks)
            raise
        summary.skipped_count = (
            summary.total_urls - summary.success_count - summary.failed_count
        )
        summary.status = (
            WebsiteStatus.COMPLETED if summary.success_count > 0 else WebsiteStatus.ERROR
        )
        summary.error = "; ".join(result.errors) or None

        combined = "\n\n".join(
            page.content for page in result.pages if page.content.strip()
        )
        links = list(dict.fromkeys(link for page in result.pages for link in page.links))
        await self.store.update_website(
            website_id,
            status=summary.status,
            scraped_content=combined,
            scraped_links=links,
            page_count=len(result.pages),
            error_message=summary.error,
            last_sync=utcnow(),
        )
        duration = time.monotonic() - started
        await self.store.update_sync_log(
            sync_log_id,
            status=SyncLogStatus.COMPLETED,
            completed_at=utcnow(),
            duration=int(duration),
            total_urls=summary.total_urls,
            success_count=summary.success_count,
            failed_count=summary.failed_count,
            skipped_count=summary.skipped_count,
            error_message=summary.error,
        )
        record_sync(SyncLogStatus.COMPLETED.value, duration)
        return summary

    async def _record_pages(
        self,
        sync_log_id: str,
        result: CrawlResult,
        summary: SyncSummary,
        index_tasks: list[asyncio.Task],
    ) -> None:
        """Store pages and entries; indexing tasks are appended as they start."""
        website_id = summary.website_id
        embedder = self.embedder if Settings.embeddings_enabled else None
        semaphore = asyncio.Semaphore(max(1, Settings.embed_concurrency))
        for page in result.pages:
            status = entry_status(page)
            page_id = await self.store.create_page(
                PageRecord(
                    website_id=website_id,
                    url=page.url,
                    title=page.title,
                    content=page.content,
                    links=page.links,
                    status=PageStatus.ERROR if page.error else PageStatus.COMPLETED,
                    error_message=page.error,
                    status_code=page.status_code,
                )
            )
            await self.store.create_sync_log_entry(
                SyncLogEntry(
                    sync_log_id=sync_log_id,
                    url=page.url,
                    status=status,
                    error_message=page.error,
                    content_size=len(page.content.encode("utf-8")),
                    status_code=page.status_code,
                )
            )
            record_crawl(status.value)
            if status is SyncEntryStatus.SUCCESS:
                summary.success_count += 1
                if embedder is not None:
                    index_tasks.append(
                        asyncio.create_task(
                            self._index_page(
                                embedder, website_id, page_id, page, semaphore
                            )
                        )
                    )
            elif status is SyncEntryStatus.FAILED:
                summary.failed_count += 1

        for visited_url in result.already_visited:
            await self.store.create_sync_log_entry(
                SyncLogEntry(
                    sync_log_id=sync_log_id,
                    url=visited_url,
                    status=SyncEntryStatus.ALREADY_VISITED,
                )
            )
            record_crawl(SyncEntryStatus.ALREADY_VISITED.value)

    async def _index_page(
        self,
        embedder: EmbeddingProvider,
        website_id: str,
        page_id: str,
        page: CrawledPage,
        semaphore: asyncio.Semaphore,
    ) -> int:
        """Chunk and embed one page; returns the number of chunks stored."""
        async with semaphore:
            document_id: str | None = None
            try:
                document_id = await self.store.create_document(
                    DocumentRecord(
                        website_id=website_id,
                        page_id=page_id,
                        name=page.title or page.url,
                        url=page.url,
                        content_text=page.content,
                        metadata={
                            "website_id": website_id,
                            "page_url": page.url,
                            "links": page.links,
                        },
                    )
                )
                return await self._embed_document(
                    embedder, website_id, page_id, document_id, page
                )
            except Exception as exc:
                LOGGER.warning("Indexing failed for %s: %s", page.url, exc)
                record_embed_failure()
                if document_id is not None:
                    await self.store.update_document(
                        document_id,
                        status=DocumentStatus.FAILED,
                        error_message=str(exc) or type(exc).__name__,
                    )
                return 0

    async def _embed_document(
        self,
        embedder: EmbeddingProvider,
        website_id: str,
        page_id: str,
        document_id: str,
        page: CrawledPage,
    ) -> int:
        chunks = chunk_page(
            page.content,
            page.url,
            page.title,
            options=self.chunk_options,
            metadata={
                "website_id": website_id,
                "page_id": page_id,
                "document_id": document_id,
            },
        )
        if not chunks:
            await self.store.update_document(
                document_id,
                status=DocumentStatus.COMPLETED,
                error_message="No chunks generated",
            )
            return 0

        vectors = await asyncio.to_thread(
            embed_texts, embedder, [chunk.content for chunk in chunks]
        )
        records = [
            ChunkRecord(
                document_id=document_id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                embedding=vector,
                token_count=embedder.estimate_tokens(chunk.content),
                metadata=dict(chunk.metadata),
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        await self.store.create_chunks(records)
        document = await self.store.get_document(document_id)
        metadata = dict(document.metadata) if document is not None else {}
        metadata.update(
            chunks_created=len(records),
            total_tokens=sum(record.token_count for record in records),
        )
        await self.store.update_document(
            document_id, status=DocumentStatus.COMPLETED, metadata=metadata
        )
        record_chunks(len(records))
        return len(records)

    async def _mark_failed(
        self,
        website_id: str,
        sync_log_id: str | None,
        message: str,
        started: float,
    ) -> None:
        duration = time.monotonic() - started
        record_sync(SyncLogStatus.FAILED.value, duration)
        if sync_log_id is not None:
            try:
                await self.store.update_sync_log(
                    sync_log_id,
                    status=SyncLogStatus.FAILED,
                    completed_at=utcnow(),
                    duration=int(duration),
                    error_message=message,
                )
            except Exception:
                LOGGER.exception("Could not mark sync log %s failed", sync_log_id)
        try:
            await self.store.update_website(
                website_id,
                status=WebsiteStatus.ERROR,
                error_message=message,
                last_sync=utcnow(),
            )
        except WebsiteNotFoundError:
            LOGGER.warning("Website %s disappeared during sync", website_id)
        except Exception:
            LOGGER.exception("Could not mark website %s failed", website_id)
