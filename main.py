import argparse
import asyncio
import json
from pathlib import Path
import time

from kb_ingest.config import Settings
from kb_ingest.index.chunker import ChunkOptions, chunk_page, chunk_stats, chunk_text
from kb_ingest.index.embeddings import get_embedding_provider
from kb_ingest.ingest.crawler import CrawlTarget, crawl_site
from kb_ingest.monitoring.metrics import run_metrics_server
from kb_ingest.storage import WebsiteRecord, create_store
from kb_ingest.sync import WebsiteIngestor


def _add_bounds(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("url")
    parser.add_argument("--max-pages", type=int, default=Settings.crawl_max_pages)
    parser.add_argument("--max-depth", type=int, default=Settings.crawl_max_depth)


async def _crawl(args: argparse.Namespace) -> None:
    target = CrawlTarget(args.url, max_pages=args.max_pages, max_depth=args.max_depth)
    deadline = time.monotonic() + Settings.sync_timeout_s
    result = await crawl_site(target, concurrency=args.concurrency, deadline=deadline)
    for page in result.pages:
        status = "ERROR" if page.error else "OK"
        print(f"{status:5} d={page.depth} {len(page.content):7d} {page.url}")
    for error in result.errors:
        print(f"error: {error}")
    print(
        f"{len(result.successful_pages)}/{len(result.pages)} pages ok, "
        f"{len(result.already_visited)} already visited"
    )


async def _ingest(args: argparse.Namespace) -> None:
    store = create_store()
    embedder = get_embedding_provider() if Settings.embeddings_enabled else None
    website_id = await store.create_website(
        WebsiteRecord(url=args.url, max_urls=args.max_pages, max_depth=args.max_depth)
    )
    summary = await WebsiteIngestor(store, embedder=embedder).run(website_id)
    print(json.dumps({**summary.__dict__, "status": summary.status.value}, indent=2))


def _chunk(args: argparse.Namespace) -> None:
    text = Path(args.file).read_text(encoding="utf-8")
    options = ChunkOptions(
        chunk_size=args.chunk_size,
        chunk_overlap=args.chunk_overlap,
        min_chunk_size=args.min_chunk_size,
    )
    if args.page:
        chunks = chunk_page(text, args.file, options=options)
    else:
        chunks = chunk_text(text, options)
    print(json.dumps(chunk_stats(chunks), indent=2))


def main() -> None:
    parser = argparse.ArgumentParser(description="Website knowledge-base ingestion CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    crawl_parser = sub.add_parser("crawl", help="Crawl a site and print the pages")
    _add_bounds(crawl_parser)
    crawl_parser.add_argument(
        "--concurrency", type=int, default=Settings.crawl_concurrency
    )

    ingest_parser = sub.add_parser("ingest", help="Run one sync job in the foreground")
    _add_bounds(ingest_parser)

    chunk_parser = sub.add_parser("chunk", help="Print chunk stats for a text file")
    chunk_parser.add_argument("file")
    chunk_parser.add_argument("--page", action="store_true", help="Paragraph mode")
    chunk_parser.add_argument("--chunk-size", type=int, default=Settings.chunk_size)
    chunk_parser.add_argument("--chunk-overlap", type=int, default=Settings.chunk_overlap)
    chunk_parser.add_argument("--min-chunk-size", type=int, default=Settings.min_chunk_size)

    sub.add_parser("metrics", help="Run Prometheus metrics server")

    args = parser.parse_args()

    if args.command == "crawl":
        asyncio.run(_crawl(args))
        return
    if args.command == "ingest":
        asyncio.run(_ingest(args))
        return
    if args.command == "chunk":
        _chunk(args)
        return
    if args.command == "metrics":
        run_metrics_server()
        return


if __name__ == "__main__":
    main()
