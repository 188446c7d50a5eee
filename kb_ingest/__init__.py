"""Website knowledge-base ingestion package."""

# Ingest
from kb_ingest.ingest.crawler import CrawlResult, CrawlTarget, crawl, crawl_site
from kb_ingest.ingest.fetcher import CrawledPage, PageFetcher, normalize_url
from kb_ingest.ingest.url_safety import (
    UnsafeUrlError,
    UrlCheck,
    ensure_safe_url,
    validate_url,
)

# Index
from kb_ingest.index.chunker import ChunkOptions, TextChunk, chunk_page, chunk_text
from kb_ingest.index.embeddings import EmbeddingProvider, get_embedding_provider
from kb_ingest.index.tokens import estimate_tokens

# Storage
from kb_ingest.storage import MemoryStore, RedisStore, create_store

# Sync
from kb_ingest.sync import SyncSummary, WebsiteIngestor

__all__ = [
    # Ingest
    "CrawlResult",
    "CrawlTarget",
    "CrawledPage",
    "PageFetcher",
    "UnsafeUrlError",
    "UrlCheck",
    "crawl",
    "crawl_site",
    "ensure_safe_url",
    "normalize_url",
    "validate_url",
    # Index
    "ChunkOptions",
    "EmbeddingProvider",
    "TextChunk",
    "chunk_page",
    "chunk_text",
    "estimate_tokens",
    "get_embedding_provider",
    # Storage
    "MemoryStore",
    "RedisStore",
    "create_store",
    # Sync
    "SyncSummary",
    "WebsiteIngestor",
]
