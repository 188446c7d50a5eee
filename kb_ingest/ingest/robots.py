import asyncio
from dataclasses import dataclass, field
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import aiohttp

from kb_ingest.config import Settings
from kb_ingest.monitoring.logging_utils import get_event_logger

log_event = get_event_logger("robots")


@dataclass
class RobotsRules:
    """robots.txt of one origin. Without a parser every URL is allowed."""

    origin: str
    crawl_delay_s: float = 0.0
    request_rate_s: float = 0.0
    parser: RobotFileParser | None = field(default=None, repr=False)

    def can_fetch(self, url: str, user_agent: str | None = None) -> bool:
        if self.parser is None:
            return True
        return self.parser.can_fetch(user_agent or Settings.user_agent, url)

    @property
    def min_delay_s(self) -> float:
        """Pause between two fetches, never longer than ``crawl_delay_max_s``."""
        wanted = max(self.crawl_delay_s, self.request_rate_s)
        return min(wanted, Settings.crawl_delay_max_s)


def origin_url(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def parse_robots(text: str, origin: str, user_agent: str | None = None) -> RobotsRules:
    agent = user_agent or Settings.user_agent
    parser = RobotFileParser(f"{origin}/robots.txt")
    parser.parse(text.splitlines())
    rate = parser.request_rate(agent)
    rate_s = rate.seconds / rate.requests if rate and rate.requests > 0 else 0.0
    return RobotsRules(
        origin=origin,
        crawl_delay_s=float(parser.crawl_delay(agent) or 0),
        request_rate_s=float(rate_s),
        parser=parser,
    )


async def fetch_robots(session: aiohttp.ClientSession, url: str) -> RobotsRules:
    """Rules for the origin of ``url``; a missing or unreadable file allows all."""
    origin = origin_url(url)
    timeout = aiohttp.ClientTimeout(total=Settings.request_timeout_s)
    try:
        async with session.get(
            f"{origin}/robots.txt", allow_redirects=False, timeout=timeout
        ) as response:
            if response.status != 200:
                log_event("robots", origin=origin, status=response.status, rules="none")
                return RobotsRules(origin=origin)
            text = await response.text(errors="replace")
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        log_event("robots", origin=origin, error=type(exc).__name__, rules="none")
        return RobotsRules(origin=origin)
    rules = parse_robots(text, origin)
    log_event("robots", origin=origin, delay_s=rules.min_delay_s)
    return rules
