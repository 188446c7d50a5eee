"""Pre-flight URL checks that keep the crawler away from internal networks.

Every URL the crawler is about to request (the seed, each discovered link and
each redirect target) goes through :func:`validate_url`. A URL is rejected when
it is malformed, uses a scheme other than http/https, carries credentials, or
names a host that is (or resolves to) a loopback, private, link-local,
multicast or otherwise non-global address.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import ipaddress
import socket
from typing import Callable, Iterable
from urllib.parse import urlsplit

from aiohttp.abc import AbstractResolver

from kb_ingest.monitoring.logging_utils import get_event_logger

log_event = get_event_logger("urlcheck")

ALLOWED_SCHEMES = {"http", "https"}
BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost"}

Resolver = Callable[[str], Iterable[str]]


class UnsafeUrlError(ValueError):
    """Raised by :func:`ensure_safe_url` when a URL fails validation."""


@dataclass(frozen=True)
class UrlCheck:
    valid: bool
    reason: str | None = None


def resolve_host(host: str) -> list[str]:
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return [info[4][0] for info in infos]


class CachingResolver:
    """Memoizes lookups for the lifetime of one crawl."""

    def __init__(self, resolver: Resolver = resolve_host) -> None:
        self._resolver = resolver
        self._cache: dict[str, list[str]] = {}

    def __call__(self, host: str) -> list[str]:
        if host not in self._cache:
            self._cache[host] = list(self._resolver(host))
        return self._cache[host]


def _parse_ip(value: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    value = value.split("%", 1)[0]
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        return None


def is_blocked_address(
    address: ipaddress.IPv4Address | ipaddress.IPv6Address,
) -> bool:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    return address.is_multicast or not address.is_global


def validate_url(url: str, *, resolver: Resolver | None = resolve_host) -> UrlCheck:
    """Check ``url`` for scheme, shape and network destination.

    ``resolver`` maps a hostname to its addresses; pass ``None`` to skip DNS
    (only literal addresses and reserved names are checked then). A hostname
    that does not resolve is accepted: the fetch itself will fail and be
    reported as a page error.
    """
    try:
        parts = urlsplit(url.strip())
        parts.port  # raises ValueError on a malformed port
    except ValueError as exc:
        return UrlCheck(False, f"Invalid URL format: {exc}")
    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        label = f'"{scheme}"' if scheme else "missing"
        return UrlCheck(
            False,
            f"Protocol {label} not allowed. Only HTTP and HTTPS are supported.",
        )
    host = (parts.hostname or "").rstrip(".")
    if not host:
        return UrlCheck(False, "Invalid URL format: missing host")
    if parts.username is not None or parts.password is not None:
        return UrlCheck(False, "URLs with embedded credentials are not allowed.")

    blocked = UrlCheck(
        False,
        "Access to private/internal addresses is not allowed for security reasons.",
    )
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        log_event("blocked", url=url, host=host)
        return blocked
    literal = _parse_ip(host)
    if literal is not None:
        if is_blocked_address(literal):
            log_event("blocked", url=url, host=host)
            return blocked
        return UrlCheck(True)
    if resolver is None:
        return UrlCheck(True)
    try:
        addresses = list(resolver(host))
    except (OSError, UnicodeError) as exc:
        log_event("unresolved", url=url, host=host, error=type(exc).__name__)
        return UrlCheck(True)
    for value in addresses:
        address = _parse_ip(value)
        if address is None or is_blocked_address(address):
            log_event("blocked", url=url, host=host, address=value)
            return blocked
    return UrlCheck(True)


def ensure_safe_url(url: str, *, resolver: Resolver | None = resolve_host) -> str:
    check = validate_url(url, resolver=resolver)
    if not check.valid:
        raise UnsafeUrlError(check.reason or "URL rejected")
    return url


class PinnedResolver(AbstractResolver):
    """aiohttp resolver that only hands out addresses :func:`validate_url` accepts.

    Sharing the crawl's :class:`CachingResolver` means the connection goes to
    the same addresses that were checked, so a host cannot answer with a
    public address during validation and a private one on connect.
    """

    def __init__(self, resolver: Resolver = resolve_host) -> None:
        self._resolver = resolver

    async def resolve(
        self, host: str, port: int = 0, family: int = socket.AF_INET
    ) -> list[dict]:
        addresses = await asyncio.to_thread(lambda: list(self._resolver(host)))
        results = []
        for value in addresses:
            address = _parse_ip(value)
            if address is None or is_blocked_address(address):
                log_event("blocked", host=host, address=value, stage="connect")
                raise OSError(f"Refusing to connect to {host}: {value} is not a public address")
            address_family = socket.AF_INET6 if address.version == 6 else socket.AF_INET
            if family and family != address_family:
                continue
            results.append(
                {
                    "hostname": host,
                    "host": str(address),
                    "port": port,
                    "family": address_family,
                    "proto": 0,
                    "flags": socket.AI_NUMERICHOST | socket.AI_NUMERICSERV,
                }
            )
        if not results:
            raise OSError(f"No usable address for {host}")
        return results

    async def close(self) -> None:
        pass
