import asyncio
from dataclasses import dataclass, field
from functools import partial
import time
from typing import Awaitable, Callable

import aiohttp

from kb_ingest.config import Settings
from kb_ingest.ingest.fetcher import CrawledPage, PageFetcher, normalize_url, origin_of
from kb_ingest.ingest.frontier import Claim, CrawlItem, Frontier
from kb_ingest.ingest.robots import RobotsRules, fetch_robots
from kb_ingest.ingest.url_safety import (
    CachingResolver,
    PinnedResolver,
    UrlCheck,
    validate_url,
)
from kb_ingest.monitoring.logging_utils import get_event_logger

log_event = get_event_logger("crawler")

FetchPage = Callable[[str, int], Awaitable[CrawledPage]]
Validate = Callable[[str], UrlCheck]
LoadRobots = Callable[[str], Awaitable[RobotsRules]]

IDLE_POLL_S = 0.05


@dataclass(frozen=True)
class CrawlTarget:
    seed_url: str
    max_pages: int = 50
    max_depth: int = 3


@dataclass
class CrawlResult:
    seed_url: str
    pages: list[CrawledPage] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    already_visited: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def successful_pages(self) -> list[CrawledPage]:
        return [page for page in self.pages if page.succeeded]


class _Crawl:
    """State of one traversal; never shared between crawls."""

    def __init__(
        self,
        target: CrawlTarget,
        seed: str,
        fetch: FetchPage,
        validate: Validate,
        robots: RobotsRules | None,
        deadline: float | None,
    ) -> None:
        self.target = target
        self.origin = origin_of(seed)
        self.fetch = fetch
        self.validate = validate
        self.robots = robots
        self.deadline = deadline
        self.frontier = Frontier(target.max_pages)
        self.result = CrawlResult(seed_url=seed)
        self.frontier.enqueue(CrawlItem(url=seed, depth=0))

    def _deadline_passed(self) -> bool:
        if self.deadline is None or time.monotonic() < self.deadline:
            return False
        if not self.result.timed_out:
            self.result.timed_out = True
            self.result.errors.append(
                f"Crawl time limit reached; {len(self.frontier)} queued URLs abandoned"
            )
            log_event("deadline", seed=self.result.seed_url, queued=len(self.frontier))
        return True

    async def worker(self) -> None:
        while True:
            if self._deadline_passed():
                return
            item = self.frontier.dequeue()
            if item is None:
                if self.frontier.drained:
                    return
                await asyncio.sleep(IDLE_POLL_S)
                continue
            try:
                if not await self._visit(item):
                    return
            finally:
                self.frontier.done()

    async def _visit(self, item: CrawlItem) -> bool:
        claim = await self.frontier.claim(item.url)
        if claim is Claim.EXHAUSTED:
            return False
        if claim is Claim.DUPLICATE:
            log_event("seen", url=item.url, depth=item.depth)
            self.result.already_visited.append(item.url)
            return True

        log_event("pick", url=item.url, depth=item.depth)
        page = await self.fetch(item.url, item.depth)
        page.depth = item.depth
        self.result.pages.append(page)
        if page.error is None and item.depth < self.target.max_depth:
            await self._expand(page, item.depth + 1)
        if self.robots is not None and self.robots.min_delay_s > 0:
            await asyncio.sleep(self.robots.min_delay_s)
        return True

    async def _expand(self, page: CrawledPage, depth: int) -> None:
        queued = 0
        for link in page.links:
            if origin_of(link) != self.origin or self.frontier.is_visited(link):
                continue
            if self.robots is not None and not self.robots.can_fetch(link):
                log_event("deny", url=link, reason="robots")
                continue
            check = await asyncio.to_thread(self.validate, link)
            if not check.valid:
                log_event("deny", url=link, reason=check.reason)
                continue
            self.frontier.enqueue(CrawlItem(url=link, depth=depth))
            queued += 1
        log_event("expand", url=page.url, links=len(page.links), queued=queued)


async def crawl(
    target: CrawlTarget,
    fetch: FetchPage,
    *,
    validate: Validate | None = None,
    load_robots: LoadRobots | None = None,
    concurrency: int = 1,
    deadline: float | None = None,
) -> CrawlResult:
    """Breadth-first crawl of ``target`` restricted to the seed's origin.

    Never raises for page-level problems. An invalid, unsafe or
    robots-disallowed seed yields a result with no pages and one error.
    ``deadline`` is a ``time.monotonic()`` value after which no new URL is
    dequeued. With ``concurrency == 1`` pages are in strict BFS order.
    """
    if validate is None:
        validate = partial(validate_url, resolver=CachingResolver())
    seed = normalize_url(target.seed_url)
    if seed is None:
        result = CrawlResult(seed_url=target.seed_url)
        result.errors.append(f"Invalid seed URL: {target.seed_url}")
        return result
    check = await asyncio.to_thread(validate, seed)
    if not check.valid:
        result = CrawlResult(seed_url=seed)
        result.errors.append(f"Seed URL rejected: {check.reason}")
        log_event("deny", url=seed, reason=check.reason)
        return result
    robots = await load_robots(seed) if load_robots is not None else None
    if robots is not None and not robots.can_fetch(seed):
        result = CrawlResult(seed_url=seed)
        result.errors.append(f"Seed URL disallowed by robots.txt: {seed}")
        log_event("deny", url=seed, reason="robots")
        return result

    state = _Crawl(target, seed, fetch, validate, robots, deadline)
    started = time.monotonic()
    if target.max_pages > 0:
        workers = [
            asyncio.create_task(state.worker()) for _ in range(max(1, concurrency))
        ]
        await asyncio.gather(*workers)
    result = state.result
    log_event(
        "crawled",
        seed=seed,
        pages=len(result.pages),
        ok=len(result.successful_pages),
        seen=len(result.already_visited),
        errors=len(result.errors),
        elapsed_s=round(time.monotonic() - started, 2),
    )
    return result


async def crawl_site(
    target: CrawlTarget,
    *,
    concurrency: int | None = None,
    deadline: float | None = None,
    respect_robots: bool | None = None,
) -> CrawlResult:
    """Crawl over a real HTTP session; the default crawler of the sync job."""
    if respect_robots is None:
        respect_robots = Settings.crawl_respect_robots
    resolver = CachingResolver()
    validate = partial(validate_url, resolver=resolver)
    connector = aiohttp.TCPConnector(resolver=PinnedResolver(resolver))
    async with aiohttp.ClientSession(
        connector=connector, headers={"User-Agent": Settings.user_agent}
    ) as session:
        fetcher = PageFetcher(session, validate=validate)
        load_robots = partial(fetch_robots, session) if respect_robots else None
        return await crawl(
            target,
            fetcher.fetch,
            validate=validate,
            load_robots=load_robots,
            concurrency=concurrency or Settings.crawl_concurrency,
            deadline=deadline,
        )
