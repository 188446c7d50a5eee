import asyncio

import aiohttp

from conftest import FakeResponse, FakeSession
from kb_ingest.config import Settings
from kb_ingest.ingest.robots import (
    RobotsRules,
    fetch_robots,
    parse_robots,
)

ROBOTS = """
User-agent: *
Disallow: /private
Crawl-delay: 10

User-agent: KnowledgeBaseBot
Disallow: /drafts
Request-rate: 1/5
"""


def test_rules_without_robots_allow_everything() -> None:
    rules = RobotsRules(origin="https://example.com")
    assert rules.can_fetch("https://example.com/anything")
    assert rules.min_delay_s == 0


def test_disallow_rules_apply_per_agent() -> None:
    rules = parse_robots(ROBOTS, "https://example.com", user_agent="OtherBot/2.0")
    assert not rules.can_fetch("https://example.com/private/page", "OtherBot/2.0")
    assert rules.can_fetch("https://example.com/drafts/x", "OtherBot/2.0")
    assert rules.can_fetch("https://example.com/docs", "OtherBot/2.0")


def test_delay_is_capped(monkeypatch) -> None:
    monkeypatch.setattr(Settings, "crawl_delay_max_s", 2.0)
    rules = parse_robots(ROBOTS, "https://example.com", user_agent="OtherBot/2.0")
    assert rules.crawl_delay_s == 10
    assert rules.min_delay_s == 2.0


def test_request_rate_for_exact_agent(monkeypatch) -> None:
    monkeypatch.setattr(Settings, "crawl_delay_max_s", 30.0)
    rules = parse_robots(ROBOTS, "https://example.com", user_agent="KnowledgeBaseBot")
    assert rules.request_rate_s == 5
    assert rules.min_delay_s == 5


def test_fetch_robots_missing_or_failing_means_allow_all() -> None:
    missing = FakeSession({})
    broken = FakeSession(
        {"https://example.com/robots.txt": aiohttp.ClientConnectionError("reset")}
    )
    for session in (missing, broken):
        rules = asyncio.run(fetch_robots(session, "https://example.com/docs/page"))
        assert rules.can_fetch("https://example.com/private")
    assert missing.requested == ["https://example.com/robots.txt"]


def test_fetch_robots_parses_rules() -> None:
    session = FakeSession(
        {
            "https://example.com/robots.txt": FakeResponse(
                200, ROBOTS, headers={"Content-Type": "text/plain"}
            )
        }
    )
    rules = asyncio.run(fetch_robots(session, "https://example.com/"))
    assert rules.origin == "https://example.com"
    assert not rules.can_fetch("https://example.com/private", "OtherBot")


def test_request_rate_spreads_requests(monkeypatch) -> None:
    monkeypatch.setattr(Settings, "crawl_delay_max_s", 30.0)
    rules = parse_robots("User-agent: *\nRequest-rate: 2/10\n", "https://example.com")
    assert rules.request_rate_s == 5
    assert rules.crawl_delay_s == 0
