import asyncio
from functools import partial

import pytest

from kb_ingest.ingest.fetcher import CrawledPage
from kb_ingest.ingest.url_safety import validate_url

# Literal addresses and reserved names are still checked; hostnames are not resolved.
NO_DNS = partial(validate_url, resolver=None)


class FakeSite:
    """In-memory site: url -> (content, links). Unknown URLs fetch as 404."""

    def __init__(self, pages: dict[str, tuple[str, list[str]]], delay_s: float = 0.0):
        self.pages = pages
        self.delay_s = delay_s
        self.fetched: list[str] = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, url: str, depth: int = 0) -> CrawledPage:
        self.fetched.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay_s)
        finally:
            self.active -= 1
        if url not in self.pages:
            return CrawledPage(url=url, error="HTTP 404: Not Found", depth=depth, status_code=404)
        content, links = self.pages[url]
        return CrawledPage(
            url=url,
            title=url.rsplit("/", 1)[-1] or "home",
            content=content,
            links=list(links),
            depth=depth,
            status_code=200,
        )


class FakeContent:
    """Delivers the body in small network-sized pieces, like a real stream."""

    def __init__(self, body: bytes, piece_size: int = 16) -> None:
        self._body = body
        self.piece_size = piece_size

    async def read(self, n: int = -1) -> bytes:
        # Only what is "buffered": never more than one piece.
        limit = self.piece_size if n < 0 else min(n, self.piece_size)
        return self._body[:limit]

    async def iter_chunked(self, n: int):
        step = min(n, self.piece_size)
        for start in range(0, len(self._body), step):
            await asyncio.sleep(0)
            yield self._body[start : start + step]


class FakeResponse:
    def __init__(
        self,
        status: int = 200,
        body: bytes | str = b"",
        headers: dict[str, str] | None = None,
        reason: str = "OK",
        charset: str | None = "utf-8",
    ) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.status = status
        self._body = body
        self.content = FakeContent(body)
        if headers is None:
            headers = {"Content-Type": "text/html; charset=utf-8"}
        self.headers = headers
        self.reason = reason
        self.charset = charset

    async def text(self, errors: str = "strict") -> str:
        return self._body.decode(self.charset or "utf-8", errors)

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False


class FakeSession:
    """Stands in for ``aiohttp.ClientSession.get``; routes may be exceptions."""

    def __init__(self, routes: dict[str, object]) -> None:
        self.routes = routes
        self.requested: list[str] = []

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.requested.append(url)
        route = self.routes.get(url)
        if isinstance(route, BaseException):
            raise route
        if route is None:
            return FakeResponse(404, reason="Not Found")
        return route


@pytest.fixture
def fake_resolver():
    table = {
        "example.com": ["93.184.216.34"],
        "docs.example.com": ["2606:2800:220:1:248:1893:25c8:1946"],
        "internal.example.com": ["10.1.2.3"],
        "metadata.example.com": ["93.184.216.34", "169.254.169.254"],
    }

    def resolve(host: str) -> list[str]:
        if host not in table:
            raise OSError(f"Name or service not known: {host}")
        return table[host]

    return resolve
