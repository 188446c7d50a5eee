import time

from prometheus_client import Counter, Histogram, start_http_server

from kb_ingest.config import Settings
from kb_ingest.monitoring.logging_utils import get_event_logger

log_event = get_event_logger("metrics")


CRAWL_PAGES = Counter(
    "crawler_pages_total", "Total pages fetched by crawler", ["status"]
)
CHUNKS_CREATED = Counter("ingest_chunks_total", "Total chunks embedded and stored")
EMBED_FAILURES = Counter(
    "ingest_embed_failures_total", "Pages whose chunking or embedding failed"
)
SYNC_JOBS = Counter("sync_jobs_total", "Finished website sync jobs", ["status"])
SYNC_DURATION_S = Histogram(
    "sync_duration_seconds",
    "Website sync duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)


def record_crawl(status: str) -> None:
    CRAWL_PAGES.labels(status=status).inc()


def record_chunks(count: int) -> None:
    CHUNKS_CREATED.inc(count)


def record_embed_failure() -> None:
    EMBED_FAILURES.inc()


def record_sync(status: str, duration_s: float) -> None:
    SYNC_JOBS.labels(status=status).inc()
    SYNC_DURATION_S.observe(duration_s)


def run_metrics_server(port: int | None = None) -> None:
    """Serve ``/metrics`` and block; used by ``main.py metrics``."""
    port = port or Settings.metrics_port
    start_http_server(port)
    log_event("serve", port=port)
    while True:
        time.sleep(1)
