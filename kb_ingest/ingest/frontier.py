import asyncio
from collections import deque
from dataclasses import dataclass
import enum

from kb_ingest.monitoring.logging_utils import get_event_logger

log_event = get_event_logger("frontier")


@dataclass
class CrawlItem:
    url: str
    depth: int = 0


class Claim(enum.Enum):
    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    EXHAUSTED = "exhausted"


class Frontier:
    """FIFO of discovered URLs plus the visited set of one crawl.

    ``claim`` is the only way a URL enters the visited set. It checks
    membership, the page limit and inserts under one lock, so concurrent
    workers can never fetch the same URL twice or overshoot ``max_pages``.
    """

    def __init__(self, max_pages: int) -> None:
        self.max_pages = max_pages
        self._queue: deque[CrawlItem] = deque()
        self._visited: set[str] = set()
        self._lock = asyncio.Lock()
        self.in_flight = 0

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def visited_count(self) -> int:
        return len(self._visited)

    @property
    def exhausted(self) -> bool:
        return len(self._visited) >= self.max_pages

    def is_visited(self, url: str) -> bool:
        return url in self._visited

    def enqueue(self, item: CrawlItem) -> None:
        self._queue.append(item)

    def dequeue(self) -> CrawlItem | None:
        """Pop the oldest item; the caller must call ``done`` when finished."""
        if not self._queue:
            return None
        self.in_flight += 1
        return self._queue.popleft()

    def done(self) -> None:
        self.in_flight -= 1

    @property
    def drained(self) -> bool:
        return not self._queue and self.in_flight == 0

    async def claim(self, url: str) -> Claim:
        async with self._lock:
            if len(self._visited) >= self.max_pages:
                return Claim.EXHAUSTED
            if url in self._visited:
                return Claim.DUPLICATE
            self._visited.add(url)
        log_event("claim", url=url, visited=len(self._visited))
        return Claim.CLAIMED
