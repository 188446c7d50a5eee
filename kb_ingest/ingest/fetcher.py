import asyncio
from dataclasses import dataclass, field
from functools import partial
import re
from typing import Callable
from urllib.parse import urldefrag, urljoin, urlparse

import aiohttp
from bs4 import BeautifulSoup

from kb_ingest.config import Settings
from kb_ingest.ingest.url_safety import CachingResolver, UrlCheck, validate_url
from kb_ingest.monitoring.logging_utils import get_event_logger

log_event = get_event_logger("fetcher")


@dataclass
class CrawledPage:
    url: str
    title: str | None = None
    content: str = ""
    links: list[str] = field(default_factory=list)
    error: str | None = None
    depth: int = 0
    status_code: int | None = None
    final_url: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and bool(self.content.strip())


UNWANTED_TAGS = (
    "nav",
    "header",
    "footer",
    "aside",
    "script",
    "style",
    "noscript",
    "template",
)
CONTENT_SELECTORS = (
    "main",
    "article",
    "[role='main']",
    ".content",
    ".main-content",
    "#content",
    "#main",
    ".post-content",
    ".entry-content",
)
BLOCK_TAGS = [
    "p", "div", "section", "article", "main", "li", "ul", "ol", "dl", "dt", "dd",
    "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "pre", "table", "tr",
    "figure", "figcaption", "form", "fieldset",
]
HTML_TYPES = {"text/html", "application/xhtml+xml", ""}
TEXT_TYPES = {"text/plain"}
REDIRECT_STATUSES = {301, 302, 303, 307, 308}
READ_CHUNK_BYTES = 64 * 1024
SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "#")

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


def normalize_url(url: str) -> str | None:
    url = url.strip()
    if not url:
        return None
    url, _ = urldefrag(url)
    try:
        parsed = urlparse(url)
        parsed.port  # raises ValueError on a malformed port
    except ValueError:
        return None
    scheme = parsed.scheme.lower()
    if scheme not in {"http", "https"} or not parsed.netloc:
        return None
    netloc = parsed.netloc.lower()
    if netloc.endswith(":80") and scheme == "http":
        netloc = netloc[:-3]
    elif netloc.endswith(":443") and scheme == "https":
        netloc = netloc[:-4]
    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"
    normalized = parsed._replace(scheme=scheme, netloc=netloc, path=path)
    return normalized.geturl()


def origin_of(url: str) -> tuple[str, str, int | None]:
    """Scheme, host and effective port; two URLs are same-origin when equal."""
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    try:
        port = parsed.port
    except ValueError:
        port = None
    if port is None:
        port = {"http": 80, "https": 443}.get(scheme)
    return scheme, (parsed.hostname or "").lower(), port


def extract_links_from_soup(soup: BeautifulSoup, base_url: str) -> list[str]:
    seen: set[str] = set()
    links: list[str] = []
    for tag in soup.find_all("a", href=True):
        href = tag.get("href")
        if not href:
            continue
        href = href.strip()
        if not href or href.lower().startswith(SKIPPED_SCHEMES):
            continue
        normalized = normalize_url(urljoin(base_url, href))
        if normalized and normalized not in seen:
            seen.add(normalized)
            links.append(normalized)
    return links


def extract_title(soup: BeautifulSoup) -> str | None:
    for tag in (soup.title, soup.find("h1")):
        if tag is None:
            continue
        text = " ".join(tag.get_text(" ", strip=True).split())
        if text:
            return text
    return None


def _select_container(soup: BeautifulSoup) -> BeautifulSoup:
    for tag_name in UNWANTED_TAGS:
        for tag in soup.find_all(tag_name):
            tag.decompose()
    for selector in CONTENT_SELECTORS:
        container = soup.select_one(selector)
        if container is not None:
            return container
    return soup.body or soup


def extract_text(soup: BeautifulSoup) -> str:
    """Visible text with block elements separated by blank lines.

    Mutates ``soup``: boilerplate tags are removed.
    """
    container = _select_container(soup)
    for br in container.find_all("br"):
        br.replace_with("\n")
    for tag in container.find_all(BLOCK_TAGS):
        tag.append("\n\n")
    return _plain_text(container.get_text())


def parse_page(url: str, html: str) -> CrawledPage:
    soup = BeautifulSoup(html, "html.parser")
    links = extract_links_from_soup(soup, url)
    title = extract_title(soup)
    content = extract_text(soup)
    return CrawledPage(url=url, title=title, content=content, links=links)


def _failed(
    url: str, depth: int, error: str, status: int | None = None
) -> CrawledPage:
    return CrawledPage(url=url, error=error, depth=depth, status_code=status)


def _decode(raw: bytes, charset: str | None) -> str:
    try:
        return raw.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def _plain_text(text: str) -> str:
    paragraphs = (" ".join(part.split()) for part in _PARAGRAPH_BREAK.split(text))
    return "\n\n".join(part for part in paragraphs if part)


class PageFetcher:
    """Fetches one page and turns it into a :class:`CrawledPage`.

    Redirects are followed by hand so that every hop is validated before it is
    requested. ``fetch`` never raises; failures end up in ``CrawledPage.error``.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        validate: Callable[[str], UrlCheck] | None = None,
        timeout_s: float | None = None,
        max_redirects: int | None = None,
        max_bytes: int | None = None,
    ) -> None:
        self._session = session
        if validate is None:
            validate = partial(validate_url, resolver=CachingResolver())
        self._validate = validate
        self._timeout = aiohttp.ClientTimeout(
            total=timeout_s if timeout_s is not None else Settings.request_timeout_s
        )
        self._max_redirects = (
            max_redirects if max_redirects is not None else Settings.max_redirects
        )
        self._max_bytes = max_bytes if max_bytes is not None else Settings.max_page_bytes

    async def fetch(self, url: str, depth: int = 0) -> CrawledPage:
        try:
            page = await self._fetch(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            if isinstance(exc, asyncio.TimeoutError):
                reason = f"timed out after {self._timeout.total}s"
            else:
                reason = str(exc) or type(exc).__name__
            log_event("fail", url=url, error_type=type(exc).__name__, error=reason)
            return _failed(url, depth, f"Failed to scrape {url}: {reason}")
        page.depth = depth
        return page

    async def _fetch(self, url: str) -> CrawledPage:
        current = url
        for _ in range(self._max_redirects + 1):
            async with self._session.get(
                current, allow_redirects=False, timeout=self._timeout
            ) as response:
                status = response.status
                if status in REDIRECT_STATUSES:
                    target, error = await self._follow(current, response)
                    if error is not None:
                        return _failed(url, 0, error, status)
                    current = target
                    continue
                if status < 200 or status >= 300:
                    log_event("fail", url=url, status=status)
                    message = f"HTTP {status}: {response.reason or ''}".strip()
                    return _failed(url, 0, message, status)
                return await self._read(url, current, response)
        return _failed(url, 0, f"Too many redirects (more than {self._max_redirects})")

    async def _follow(
        self, current: str, response: aiohttp.ClientResponse
    ) -> tuple[str, str | None]:
        location = response.headers.get("Location")
        if not location:
            return current, f"HTTP {response.status}: redirect without Location"
        target = normalize_url(urljoin(current, location))
        if target is None:
            return current, f"Redirected to unsupported URL: {location}"
        check = await asyncio.to_thread(self._validate, target)
        if not check.valid:
            log_event("deny", url=current, redirect=target, reason=check.reason)
            return current, f"Redirect to {target} rejected: {check.reason}"
        return target, None

    async def _read(
        self, url: str, final_url: str, response: aiohttp.ClientResponse
    ) -> CrawledPage:
        content_type = response.headers.get("Content-Type", "")
        mimetype = content_type.split(";", 1)[0].strip().lower()
        if mimetype not in HTML_TYPES and mimetype not in TEXT_TYPES:
            log_event("skip", url=url, content_type=mimetype)
            return CrawledPage(url=url, status_code=response.status, final_url=final_url)
        raw = await self._read_body(url, response)
        text = _decode(raw, response.charset)
        if mimetype in TEXT_TYPES:
            page = CrawledPage(url=url, content=_plain_text(text))
        else:
            page = parse_page(final_url, text)
            page.url = url
        page.status_code = response.status
        page.final_url = final_url
        log_event(
            "fetched",
            url=url,
            status=response.status,
            chars=len(page.content),
            links=len(page.links),
        )
        return page

    async def _read_body(self, url: str, response: aiohttp.ClientResponse) -> bytes:
        """Read until EOF or ``max_bytes``; a single ``read`` may return a partial body."""
        parts: list[bytes] = []
        size = 0
        async for part in response.content.iter_chunked(READ_CHUNK_BYTES):
            parts.append(part)
            size += len(part)
            if size >= self._max_bytes:
                log_event("truncated", url=url, max_bytes=self._max_bytes)
                break
        return b"".join(parts)[: self._max_bytes]
