import asyncio
from dataclasses import asdict
import math

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from kb_ingest.config import Settings
from kb_ingest.index.embeddings import get_embedding_provider
from kb_ingest.ingest.url_safety import validate_url
from kb_ingest.monitoring.logging_utils import get_event_logger
from kb_ingest.ratelimit import RateLimitResult, create_rate_limiter, now_ms
from kb_ingest.storage import WebsiteRecord, WebsiteStatus, create_store
from kb_ingest.sync import WebsiteIngestor


app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
log_event = get_event_logger("api")


class WebsiteCreate(BaseModel):
    url: str = Field(min_length=1)
    max_urls: int | None = Field(None, ge=1, le=1000)
    max_depth: int | None = Field(None, ge=0, le=10)


@app.on_event("startup")
async def startup() -> None:
    # Pre-set state (tests, embedding hosts) wins over the configured defaults.
    if getattr(app.state, "store", None) is None:
        app.state.store = create_store()
    if getattr(app.state, "ingestor", None) is None:
        embedder = get_embedding_provider() if Settings.embeddings_enabled else None
        app.state.ingestor = WebsiteIngestor(app.state.store, embedder=embedder)
    if getattr(app.state, "rate_limiter", None) is None:
        app.state.rate_limiter = create_rate_limiter()
    log_event(
        "startup",
        store=type(app.state.store).__name__,
        embeddings=Settings.embeddings_enabled,
    )


async def _check_url(url: str) -> None:
    check = await asyncio.to_thread(validate_url, url)
    if not check.valid:
        log_event("reject", url=url, reason=check.reason)
        raise HTTPException(status_code=400, detail=check.reason or "Invalid URL")


async def _get_website(website_id: str) -> WebsiteRecord:
    website = await app.state.store.get_website(website_id)
    if website is None:
        raise HTTPException(status_code=404, detail="Website not found")
    return website


def _rate_limit_headers(limit: int, result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }
    if not result.allowed:
        retry_after = math.ceil(max(0, result.reset_at - now_ms()) / 1000)
        headers["Retry-After"] = str(retry_after)
    return headers


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.post("/websites", status_code=201)
async def create_website(body: WebsiteCreate) -> dict:
    await _check_url(body.url)
    website_id = await app.state.store.create_website(
        WebsiteRecord(url=body.url, max_urls=body.max_urls, max_depth=body.max_depth)
    )
    log_event("create", website=website_id, url=body.url)
    return asdict(await _get_website(website_id))


@app.post("/websites/{website_id}/scrape", status_code=202)
async def scrape_website(website_id: str, request: Request):
    limit = Settings.ingest_rate_limit
    client = request.client.host if request.client else "unknown"
    result = await app.state.rate_limiter.check(
        f"scrape:{client}", limit, Settings.ingest_rate_window_ms
    )
    if not result.allowed:
        log_event("throttle", website=website_id, client=client)
        return JSONResponse(
            {"detail": "Too many scrape requests"},
            status_code=429,
            headers=_rate_limit_headers(limit, result),
        )

    website = await _get_website(website_id)
    await _check_url(website.url)
    app.state.ingestor.start(website_id, website.url)
    log_event("scrape", website=website_id, url=website.url)
    return JSONResponse(
        {"message": "Scraping started", "status": WebsiteStatus.SYNCING.value},
        status_code=202,
        headers=_rate_limit_headers(limit, result),
    )


@app.get("/websites/{website_id}")
async def get_website(website_id: str) -> dict:
    return asdict(await _get_website(website_id))


@app.get("/websites/{website_id}/pages")
async def list_pages(website_id: str) -> dict:
    await _get_website(website_id)
    pages = await app.state.store.list_pages(website_id)
    return {"count": len(pages), "pages": [asdict(page) for page in pages]}


@app.get("/websites/{website_id}/sync-logs")
async def list_sync_logs(website_id: str) -> dict:
    await _get_website(website_id)
    logs = await app.state.store.list_sync_logs(website_id)
    return {"count": len(logs), "sync_logs": [asdict(log) for log in logs]}


@app.get("/websites/{website_id}/sync-logs/{sync_log_id}")
async def get_sync_log(website_id: str, sync_log_id: str) -> dict:
    await _get_website(website_id)
    sync_log = await app.state.store.get_sync_log(sync_log_id)
    if sync_log is None or sync_log.website_id != website_id:
        raise HTTPException(status_code=404, detail="Sync log not found")
    entries = await app.state.store.list_sync_log_entries(sync_log_id)
    return {**asdict(sync_log), "entries": [asdict(entry) for entry in entries]}
