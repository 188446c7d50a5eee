"""Ingest subpackage: data acquisition components."""

from kb_ingest.ingest.crawler import CrawlResult, CrawlTarget, crawl, crawl_site
from kb_ingest.ingest.fetcher import (
    CrawledPage,
    PageFetcher,
    extract_links_from_soup,
    extract_text,
    extract_title,
    normalize_url,
    origin_of,
    parse_page,
)
from kb_ingest.ingest.frontier import Claim, CrawlItem, Frontier
from kb_ingest.ingest.robots import RobotsRules, fetch_robots, parse_robots
from kb_ingest.ingest.url_safety import (
    CachingResolver,
    UnsafeUrlError,
    UrlCheck,
    ensure_safe_url,
    validate_url,
)

__all__ = [
    # crawler
    "CrawlResult",
    "CrawlTarget",
    "crawl",
    "crawl_site",
    # fetcher
    "CrawledPage",
    "PageFetcher",
    "extract_links_from_soup",
    "extract_text",
    "extract_title",
    "normalize_url",
    "origin_of",
    "parse_page",
    # frontier
    "Claim",
    "CrawlItem",
    "Frontier",
    # robots
    "RobotsRules",
    "fetch_robots",
    "parse_robots",
    # url_safety
    "CachingResolver",
    "UnsafeUrlError",
    "UrlCheck",
    "ensure_safe_url",
    "validate_url",
]
