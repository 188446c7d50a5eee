"""Monitoring subpackage: observability components."""

from kb_ingest.monitoring.logging_utils import get_event_logger, get_logger, log_event
from kb_ingest.monitoring.metrics import (
    CHUNKS_CREATED,
    CRAWL_PAGES,
    EMBED_FAILURES,
    SYNC_DURATION_S,
    SYNC_JOBS,
    record_chunks,
    record_crawl,
    record_embed_failure,
    record_sync,
    run_metrics_server,
)

__all__ = [
    # logging
    "get_event_logger",
    "get_logger",
    "log_event",
    # metrics
    "CHUNKS_CREATED",
    "CRAWL_PAGES",
    "EMBED_FAILURES",
    "SYNC_DURATION_S",
    "SYNC_JOBS",
    "record_chunks",
    "record_crawl",
    "record_embed_failure",
    "record_sync",
    "run_metrics_server",
]
