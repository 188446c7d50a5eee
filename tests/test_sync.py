import asyncio
import time

import pytest

from kb_ingest.config import Settings
from kb_ingest.index.embeddings import DummyEmbeddingProvider, EmbeddingProvider
from kb_ingest.ingest.crawler import CrawlResult, CrawlTarget
from kb_ingest.ingest.fetcher import CrawledPage
from kb_ingest.storage.base import (
    DocumentStatus,
    SyncEntryStatus,
    SyncLogStatus,
    WebsiteRecord,
    WebsiteStatus,
)
from kb_ingest.storage.memory import MemoryStore
from kb_ingest.sync import WebsiteIngestor

SEED = "https://example.com/"
LONG_TEXT = "\n\n".join(
    ("Paragraph about the product and how teams use it every day. " * 6).strip()
    for _ in range(6)
)


def _ok(path: str, content: str = "Useful page text.", links=None) -> CrawledPage:
    return CrawledPage(
        url=SEED + path,
        title=path or "Home",
        content=content,
        links=links or [],
        status_code=200,
    )


def _failed(path: str) -> CrawledPage:
    return CrawledPage(url=SEED + path, error="HTTP 500: Server Error", status_code=500)


class FakeCrawler:
    def __init__(self, result: CrawlResult) -> None:
        self.result = result
        self.calls: list[tuple[CrawlTarget, float | None]] = []

    async def __call__(self, target: CrawlTarget, deadline: float | None = None) -> CrawlResult:
        self.calls.append((target, deadline))
        return self.result


def _setup(pages, errors=None, already_visited=None, **website_fields):
    store = MemoryStore()
    website_id = asyncio.run(store.create_website(WebsiteRecord(url=SEED, **website_fields)))
    crawler = FakeCrawler(
        CrawlResult(
            seed_url=SEED,
            pages=pages,
            errors=errors or [],
            already_visited=already_visited or [],
        )
    )
    return store, website_id, crawler


def test_partial_success_completes() -> None:
    pages = [_ok(""), _failed("a"), _ok("b"), _failed("c"), _ok("d")]
    store, website_id, crawler = _setup(pages)

    summary = asyncio.run(WebsiteIngestor(store, crawler=crawler).run(website_id))

    assert summary.status is WebsiteStatus.COMPLETED
    website = store.websites[website_id]
    assert website.status is WebsiteStatus.COMPLETED
    assert website.page_count == 5
    assert website.error_message is None
    assert website.last_sync is not None
    sync_log = store.sync_logs[summary.sync_log_id]
    assert sync_log.status is SyncLogStatus.COMPLETED
    assert (sync_log.total_urls, sync_log.success_count, sync_log.failed_count) == (5, 3, 2)
    assert sync_log.skipped_count == 0
    assert sync_log.completed_at is not None
    entries = store.entries[summary.sync_log_id]
    assert [entry.status for entry in entries] == [
        SyncEntryStatus.SUCCESS,
        SyncEntryStatus.FAILED,
        SyncEntryStatus.SUCCESS,
        SyncEntryStatus.FAILED,
        SyncEntryStatus.SUCCESS,
    ]
    assert entries[1].error_message == "HTTP 500: Server Error"
    assert entries[1].status_code == 500
    assert entries[0].content_size == len("Useful page text.")


def test_all_failures_mark_website_error() -> None:
    store, website_id, crawler = _setup([_failed(""), _failed("a")])

    summary = asyncio.run(WebsiteIngestor(store, crawler=crawler).run(website_id))

    assert summary.status is WebsiteStatus.ERROR
    assert store.websites[website_id].status is WebsiteStatus.ERROR
    sync_log = store.sync_logs[summary.sync_log_id]
    assert sync_log.status is SyncLogStatus.COMPLETED
    assert sync_log.failed_count == 2


def test_empty_pages_are_skipped_and_counts_add_up() -> None:
    pages = [_ok(""), _ok("empty", content="   "), _failed("x")]
    store, website_id, crawler = _setup(
        pages, already_visited=[SEED + "empty"], errors=["first", "second"]
    )

    summary = asyncio.run(WebsiteIngestor(store, crawler=crawler).run(website_id))

    sync_log = store.sync_logs[summary.sync_log_id]
    assert sync_log.skipped_count == 1
    assert (
        sync_log.success_count + sync_log.failed_count + sync_log.skipped_count
        == sync_log.total_urls
        == 3
    )
    assert sync_log.error_message == "first; second"
    statuses = [entry.status for entry in store.entries[summary.sync_log_id]]
    assert statuses.count(SyncEntryStatus.ALREADY_VISITED) == 1
    assert statuses.count(SyncEntryStatus.SKIPPED) == 1
    assert store.websites[website_id].error_message == "first; second"


def test_website_bounds_and_deadline_reach_the_crawler() -> None:
    store, website_id, crawler = _setup([_ok("")], max_urls=7, max_depth=1)

    asyncio.run(WebsiteIngestor(store, crawler=crawler).run(website_id))

    target, deadline = crawler.calls[0]
    assert target == CrawlTarget(SEED, max_pages=7, max_depth=1)
    assert deadline is not None


def test_website_content_and_links_are_combined() -> None:
    pages = [
        _ok("", "Home text", links=[SEED + "a", SEED + "b"]),
        _ok("a", "About text", links=[SEED + "b", "https://other.org/"]),
        _failed("b"),
    ]
    store, website_id, crawler = _setup(pages)

    asyncio.run(WebsiteIngestor(store, crawler=crawler).run(website_id))

    website = store.websites[website_id]
    assert website.scraped_content == "Home text\n\nAbout text"
    assert website.scraped_links == [SEED + "a", SEED + "b", "https://other.org/"]


def test_resync_replaces_previous_pages() -> None:
    store, website_id, crawler = _setup([_ok(""), _ok("a")])
    ingestor = WebsiteIngestor(store, crawler=crawler)
    asyncio.run(ingestor.run(website_id))
    crawler.result = CrawlResult(seed_url=SEED, pages=[_ok("")])
    asyncio.run(ingestor.run(website_id))

    pages = asyncio.run(store.list_pages(website_id))
    assert [page.url for page in pages] == [SEED]
    assert len(asyncio.run(store.list_sync_logs(website_id))) == 2


def test_pages_are_chunked_and_embedded(monkeypatch) -> None:
    monkeypatch.setattr(Settings, "embeddings_enabled", True)
    pages = [_ok("guide", LONG_TEXT), _ok("tiny", "Too short to chunk.")]
    store, website_id, crawler = _setup(pages)
    ingestor = WebsiteIngestor(store, embedder=DummyEmbeddingProvider(), crawler=crawler)

    summary = asyncio.run(ingestor.run(website_id))

    assert summary.chunks_created > 0
    documents = {doc.url: doc for doc in store.documents.values()}
    guide = documents[SEED + "guide"]
    assert guide.status is DocumentStatus.COMPLETED
    assert guide.metadata["chunks_created"] == summary.chunks_created
    chunks = asyncio.run(store.list_chunks(guide.id))
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    assert all(len(chunk.embedding) == Settings.embeddings_dim for chunk in chunks)
    assert all(chunk.metadata["document_id"] == guide.id for chunk in chunks)
    assert guide.metadata["total_tokens"] == sum(chunk.token_count for chunk in chunks)
    tiny = documents[SEED + "tiny"]
    assert tiny.status is DocumentStatus.COMPLETED
    assert tiny.error_message == "No chunks generated"


def test_embedding_disabled_skips_documents(monkeypatch) -> None:
    monkeypatch.setattr(Settings, "embeddings_enabled", False)
    store, website_id, crawler = _setup([_ok("guide", LONG_TEXT)])
    ingestor = WebsiteIngestor(store, embedder=DummyEmbeddingProvider(), crawler=crawler)

    asyncio.run(ingestor.run(website_id))

    assert store.documents == {}


def test_embedding_failure_does_not_fail_the_job(monkeypatch) -> None:
    class FailingProvider(EmbeddingProvider):
        def embed_batch(self, texts: list[str]) -> list[list[float]]:
            raise RuntimeError("provider unavailable")

    monkeypatch.setattr(Settings, "embeddings_enabled", True)
    store, website_id, crawler = _setup([_ok("guide", LONG_TEXT), _ok("other", LONG_TEXT)])
    ingestor = WebsiteIngestor(store, embedder=FailingProvider(), crawler=crawler)

    summary = asyncio.run(ingestor.run(website_id))

    assert summary.status is WebsiteStatus.COMPLETED
    assert store.sync_logs[summary.sync_log_id].status is SyncLogStatus.COMPLETED
    assert {doc.status for doc in store.documents.values()} == {DocumentStatus.FAILED}
    assert all(doc.error_message == "provider unavailable" for doc in store.documents.values())
    assert store.chunks == {}


def test_store_failure_marks_job_failed() -> None:
    class BrokenStore(MemoryStore):
        async def create_page(self, page):
            raise RuntimeError("database unavailable")

    store = BrokenStore()
    website_id = asyncio.run(store.create_website(WebsiteRecord(url=SEED)))
    crawler = FakeCrawler(CrawlResult(seed_url=SEED, pages=[_ok("")]))

    summary = asyncio.run(WebsiteIngestor(store, crawler=crawler).run(website_id))

    assert summary.status is WebsiteStatus.ERROR
    assert summary.error == "database unavailable"
    sync_log = store.sync_logs[summary.sync_log_id]
    assert sync_log.status is SyncLogStatus.FAILED
    assert sync_log.error_message == "database unavailable"
    website = store.websites[website_id]
    assert website.status is WebsiteStatus.ERROR
    assert website.error_message == "database unavailable"


def test_crawler_exception_never_leaves_website_syncing() -> None:
    async def exploding_crawler(target, deadline=None):
        raise RuntimeError("crawler crashed")

    store = MemoryStore()
    website_id = asyncio.run(store.create_website(WebsiteRecord(url=SEED)))

    summary = asyncio.run(WebsiteIngestor(store, crawler=exploding_crawler).run(website_id))

    assert summary.status is WebsiteStatus.ERROR
    assert store.websites[website_id].status is WebsiteStatus.ERROR


def test_unknown_website_fails_sync_log() -> None:
    store, _, crawler = _setup([_ok("")])

    summary = asyncio.run(WebsiteIngestor(store, crawler=crawler).run("missing"))

    assert summary.status is WebsiteStatus.ERROR
    assert store.sync_logs[summary.sync_log_id].status is SyncLogStatus.FAILED
    assert crawler.calls == []


def test_start_runs_in_background() -> None:
    store, website_id, crawler = _setup([_ok("")])
    ingestor = WebsiteIngestor(store, crawler=crawler)

    async def scenario() -> None:
        task = ingestor.start(website_id)
        assert not task.done()
        await task

    asyncio.run(scenario())
    assert store.websites[website_id].status is WebsiteStatus.COMPLETED
    assert ingestor._background_tasks == set()


def test_failed_job_leaves_no_indexing_running(monkeypatch) -> None:
    class SlowProvider(DummyEmbeddingProvider):
        def embed_batch(self, texts: list[str]) -> list[list[float]]:
            time.sleep(0.05)
            return super().embed_batch(texts)

    class FlakyStore(MemoryStore):
        pages_created = 0

        async def create_page(self, page):
            self.pages_created += 1
            if self.pages_created == 2:
                raise RuntimeError("database unavailable")
            return await super().create_page(page)

    monkeypatch.setattr(Settings, "embeddings_enabled", True)
    store = FlakyStore()
    website_id = asyncio.run(store.create_website(WebsiteRecord(url=SEED)))
    crawler = FakeCrawler(
        CrawlResult(seed_url=SEED, pages=[_ok("guide", LONG_TEXT), _ok("other", LONG_TEXT)])
    )
    ingestor = WebsiteIngestor(store, embedder=SlowProvider(), crawler=crawler)

    async def scenario():
        summary = await ingestor.run(website_id)
        await asyncio.sleep(0.3)
        return summary

    summary = asyncio.run(scenario())

    assert summary.status is WebsiteStatus.ERROR
    assert store.sync_logs[summary.sync_log_id].status is SyncLogStatus.FAILED
    assert store.chunks == {}
    assert all(doc.status is not DocumentStatus.COMPLETED for doc in store.documents.values())


def test_cancelled_job_is_marked_failed() -> None:
    async def hanging_crawler(target, deadline=None):
        await asyncio.sleep(3600)

    store = MemoryStore()
    website_id = asyncio.run(store.create_website(WebsiteRecord(url=SEED)))
    ingestor = WebsiteIngestor(store, crawler=hanging_crawler)

    async def scenario() -> None:
        task = ingestor.start(website_id)
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    website = store.websites[website_id]
    assert website.status is WebsiteStatus.ERROR
    assert website.error_message == "Sync cancelled"
    [sync_log] = store.sync_logs.values()
    assert sync_log.status is SyncLogStatus.FAILED
