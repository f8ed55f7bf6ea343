"""SSRF-safe URL scraping with main-content extraction and injection filtering.

Every request target (the page, its robots.txt and each redirect hop) is
validated before a connection is made: only http/https, no local hostnames,
and no hostname whose DNS answers include a private, loopback, link-local or
otherwise non-global address. robots.txt rules are checked for the page and
for every redirect target. Extracted text is bounded in length and scanned
for prompt-injection phrases before it is handed back.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence
from urllib.parse import urljoin, urlsplit
from urllib.robotparser import RobotFileParser

import httpx
import trafilatura
from bs4 import BeautifulSoup

from .config import Settings
from .errors import SecurityRejection
from .models import ScrapeFailure, ScrapeResult
from .observability import MetricsRecorder, audit_security_event

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable[Sequence[str]]]

_ALLOWED_SCHEMES = {"http", "https"}
_ALLOWED_CONTENT_TYPES = {"text/html", "application/xhtml+xml"}
_BLOCKED_HOSTNAMES = {"localhost", "metadata.google.internal", "metadata"}
_BLOCKED_HOST_SUFFIXES = (".localhost", ".local", ".internal")
_REDIRECT_STATUSES = {301, 302, 303, 307, 308}
_ROBOTS_MAX_BYTES = 512 * 1024
_DNS_TIMEOUT = 5.0
_ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"ignore\s+(all\s+)?previous\s+instructions?", re.IGNORECASE),
    re.compile(r"system\s+prompt:?", re.IGNORECASE),
    re.compile(r"you\s+are\s+now\s+(a|an|in)\b", re.IGNORECASE),
    re.compile(r"disregard\s+(all\s+)?prior", re.IGNORECASE),
    re.compile(r"new\s+instructions?:", re.IGNORECASE),
    re.compile(r"override\s+previous", re.IGNORECASE),
)

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True)
class ScraperLimits:
    timeout: float = 30.0
    robots_timeout: float = 5.0
    min_chars: int = 100
    max_chars: int = 50_000
    max_bytes: int = 5 * 1024 * 1024
    max_redirects: int = 3
    user_agent: str = "ChatArbor-Bot/1.0 (+https://chatarbor.com/bot)"
    robots_agent: str = "ChatArbor-Bot"
    respect_robots: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScraperLimits":
        return cls(
            timeout=settings.scrape_timeout,
            robots_timeout=settings.robots_timeout,
            min_chars=settings.scrape_min_chars,
            max_chars=settings.scrape_max_chars,
            max_bytes=settings.scrape_max_bytes,
            max_redirects=settings.scrape_max_redirects,
            user_agent=settings.scrape_user_agent,
            robots_agent=settings.robots_agent,
            respect_robots=settings.scrape_respect_robots,
        )


class _ScrapeRejected(Exception):
    """Internal short-circuit carrying the failure reason for a scrape stage."""

    def __init__(self, failure: ScrapeFailure, message: str) -> None:
        super().__init__(message)
        self.failure = failure
        self.message = message


class _ScrapeBlocked(SecurityRejection):
    """Security-stage refusal. ``fields`` go to the audit log, never to the caller."""

    def __init__(self, failure: ScrapeFailure, event: str, **fields: object) -> None:
        super().__init__(f"{event} url={fields.get('url')}")
        self.failure = failure
        self.event = event
        self.fields = fields


async def resolve_host(hostname: str) -> list[str]:
    """Resolve ``hostname`` to every address the system resolver returns."""

    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return sorted({str(info[4][0]) for info in infos})


def is_disallowed_address(address: str) -> bool:
    """Return True for any address that is not safe to fetch from."""

    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
        or not ip.is_global
    )


def find_injection(text: str) -> str | None:
    """Return the first prompt-injection signature found in ``text``."""

    for pattern in INJECTION_PATTERNS:
        if pattern.search(text):
            return pattern.pattern
    return None


class UrlScraper:
    """Fetch a public web page and reduce it to its main readable text."""

    def __init__(
        self,
        limits: ScraperLimits | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        resolver: Resolver | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._limits = limits or ScraperLimits()
        self._client = client
        self._owns_client = client is None
        self._resolver = resolver or resolve_host
        self._metrics = metrics

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        metrics: MetricsRecorder | None = None,
    ) -> "UrlScraper":
        return cls(ScraperLimits.from_settings(settings), metrics=metrics)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def scrape(self, url: str) -> ScrapeResult:
        """Run the full validation and extraction pipeline for ``url``."""

        url = (url or "").strip()
        try:
            await self._validate_target(url)
            if self._limits.respect_robots:
                await self._check_robots(url)
            html, final_url = await asyncio.wait_for(self._fetch(url), timeout=self._limits.timeout)
            title, text = await asyncio.to_thread(extract_main_text, html)
            self._check_content(text, final_url)
        except _ScrapeBlocked as blocked:
            self._record(blocked.failure.value)
            audit_security_event(blocked.event, **blocked.fields)
            return ScrapeResult.failed(blocked.failure, blocked.user_message)
        except _ScrapeRejected as rejection:
            self._record(rejection.failure.value)
            logger.info(
                "scrape.rejected url=%s reason=%s message=%s",
                url,
                rejection.failure.value,
                rejection.message,
            )
            return ScrapeResult.failed(rejection.failure, rejection.message)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            self._record(ScrapeFailure.TIMEOUT.value)
            logger.info("scrape.timeout url=%s", url)
            return ScrapeResult.failed(ScrapeFailure.TIMEOUT, "Request timed out")
        except httpx.HTTPError as exc:
            self._record(ScrapeFailure.FETCH_FAILED.value)
            logger.warning("scrape.fetch_failed url=%s error=%s", url, exc)
            return ScrapeResult.failed(ScrapeFailure.FETCH_FAILED, "Failed to fetch URL")

        self._record("success")
        logger.info("scrape.completed url=%s chars=%s", url, len(text))
        return ScrapeResult.ok(text, title=title)

    # Validation ----------------------------------------------------------

    async def _validate_target(self, url: str) -> None:
        try:
            parts = urlsplit(url)
            hostname = parts.hostname
        except ValueError as exc:
            raise _ScrapeRejected(ScrapeFailure.INVALID_URL, f"Invalid URL: {exc}") from exc

        if parts.scheme.lower() not in _ALLOWED_SCHEMES:
            raise _ScrapeRejected(
                ScrapeFailure.UNSUPPORTED_SCHEME,
                "Only HTTP and HTTPS URLs are supported",
            )
        if not hostname:
            raise _ScrapeRejected(ScrapeFailure.INVALID_URL, "URL has no hostname")

        host = hostname.rstrip(".").lower()
        if host in _BLOCKED_HOSTNAMES or host.endswith(_BLOCKED_HOST_SUFFIXES):
            raise _ScrapeBlocked(ScrapeFailure.BLOCKED_HOST, "scrape.blocked_host", url=url, host=host)

        try:
            ipaddress.ip_address(host.strip("[]"))
        except ValueError:
            addresses = await self._resolve(host)
        else:
            addresses = [host.strip("[]")]

        for address in addresses:
            if is_disallowed_address(address):
                raise _ScrapeBlocked(
                    ScrapeFailure.PRIVATE_ADDRESS, "scrape.private_address", url=url, host=host, address=address
                )

    async def _resolve(self, host: str) -> Sequence[str]:
        try:
            addresses = await asyncio.wait_for(self._resolver(host), timeout=_DNS_TIMEOUT)
        except UnicodeError as exc:
            raise _ScrapeRejected(ScrapeFailure.INVALID_URL, f"Invalid hostname: {host}") from exc
        except (OSError, asyncio.TimeoutError) as exc:
            raise _ScrapeRejected(ScrapeFailure.DNS_FAILURE, f"DNS resolution failed for {host}") from exc
        if not addresses:
            raise _ScrapeRejected(ScrapeFailure.DNS_FAILURE, f"DNS resolution returned no addresses for {host}")
        return addresses

    async def _check_robots(self, url: str) -> None:
        parts = urlsplit(url)
        robots_url = f"{parts.scheme}://{parts.netloc}/robots.txt"
        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.get(
                    robots_url,
                    headers={"User-Agent": self._limits.user_agent},
                    follow_redirects=False,
                ),
                timeout=self._limits.robots_timeout,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.warning("scrape.robots_unavailable url=%s error=%s", robots_url, exc)
            return

        if not response.is_success:
            logger.debug("scrape.robots_missing url=%s status=%s", robots_url, response.status_code)
            return

        parser = RobotFileParser()
        parser.parse(response.content[:_ROBOTS_MAX_BYTES].decode("utf-8", errors="ignore").splitlines())
        if not parser.can_fetch(self._limits.robots_agent, url):
            raise _ScrapeBlocked(
                ScrapeFailure.ROBOTS_DISALLOWED, "scrape.robots_disallowed", url=url, agent=self._limits.robots_agent
            )

    def _check_content(self, text: str, url: str) -> None:
        if not text:
            raise _ScrapeRejected(
                ScrapeFailure.NO_CONTENT,
                "Could not extract readable content from this page",
            )
        if len(text) < self._limits.min_chars:
            raise _ScrapeRejected(ScrapeFailure.CONTENT_TOO_SHORT, "Content too short to be useful")
        if len(text) > self._limits.max_chars:
            raise _ScrapeRejected(ScrapeFailure.CONTENT_TOO_LONG, "Content too large (exceeds limit)")
        pattern = find_injection(text)
        if pattern is not None:
            raise _ScrapeBlocked(ScrapeFailure.INJECTION_DETECTED, "scrape.injection_detected", url=url, pattern=pattern)

    # Fetching ------------------------------------------------------------

    async def _fetch(self, url: str) -> tuple[str, str]:
        client = self._get_client()
        current = url
        headers = {"User-Agent": self._limits.user_agent, "Accept": _ACCEPT_HEADER}

        for hop in range(self._limits.max_redirects + 1):
            async with client.stream("GET", current, headers=headers, follow_redirects=False) as response:
                if response.status_code in _REDIRECT_STATUSES:
                    location = response.headers.get("location")
                    if not location:
                        raise _ScrapeRejected(ScrapeFailure.HTTP_STATUS, "Redirect without a location")
                    next_url = urljoin(current, location)
                    logger.debug("scrape.redirect from=%s to=%s hop=%s", current, next_url, hop + 1)
                    await self._validate_target(next_url)
                    if self._limits.respect_robots:
                        await self._check_robots(next_url)
                    current = next_url
                    continue

                if not response.is_success:
                    raise _ScrapeRejected(
                        ScrapeFailure.HTTP_STATUS,
                        f"Failed to fetch URL: {response.status_code} {response.reason_phrase}",
                    )

                media_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
                if media_type not in _ALLOWED_CONTENT_TYPES:
                    raise _ScrapeRejected(
                        ScrapeFailure.UNSUPPORTED_CONTENT_TYPE,
                        "URL must point to an HTML page",
                    )

                body = await self._read_capped(response)
                return _decode(body, response.charset_encoding), current

        raise _ScrapeRejected(
            ScrapeFailure.FETCH_FAILED,
            f"Too many redirects (>{self._limits.max_redirects})",
        )

    async def _read_capped(self, response: httpx.Response) -> bytes:
        limit = self._limits.max_bytes
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise _ScrapeRejected(ScrapeFailure.RESPONSE_TOO_LARGE, "Response body exceeds size limit")
        buffer = bytearray()
        async for block in response.aiter_bytes():
            buffer.extend(block)
            if len(buffer) > limit:
                raise _ScrapeRejected(ScrapeFailure.RESPONSE_TOO_LARGE, "Response body exceeds size limit")
        return bytes(buffer)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._limits.timeout)
        return self._client

    def _record(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.increment("scrape.requests", outcome=outcome)


def _decode(body: bytes, encoding: str | None) -> str:
    try:
        return body.decode(encoding or "utf-8", errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


def extract_main_text(html: str) -> tuple[str | None, str]:
    """Return ``(title, collapsed main text)`` with page boilerplate removed."""

    soup = BeautifulSoup(html, "html.parser")
    title = None
    if soup.title and soup.title.string:
        title = _WHITESPACE_RE.sub(" ", soup.title.string).strip() or None

    extracted = trafilatura.extract(
        html,
        output_format="txt",
        include_comments=False,
        include_tables=True,
        include_images=False,
    )
    text = _WHITESPACE_RE.sub(" ", extracted or "").strip()
    return title, text


__all__ = [
    "INJECTION_PATTERNS",
    "ScraperLimits",
    "UrlScraper",
    "extract_main_text",
    "find_injection",
    "is_disallowed_address",
    "resolve_host",
]
