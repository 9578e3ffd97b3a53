"""HTTP fetching with status-aware error classification.

A fetch makes exactly one attempt. Failures are raised as typed crawler
errors so the crawler pool can apply its backoff policy and feed the
adaptive concurrency controller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from hm_crawler.errors import BlockingError, NetworkError, PermanentURLError, RateLimitError
from hm_crawler.ingest.proxy_manager import Identity, IdentityProvider

logger = logging.getLogger(__name__)

# Bot-wall and blocked page indicators (lowercase match)
BLOCK_PATTERNS = [
    ("verify you are a human", "Human verification required"),
    ("are you a robot", "Robot check"),
    ("robot check", "Robot check"),
    ("pardon our interruption", "Bot protection"),
    ("request has been blocked", "Request blocked"),
    ("unusual traffic", "Unusual traffic detected"),
    ("px-captcha", "Captcha required"),
    ("captcha-delivery", "Captcha required"),
    ("access denied", "Access denied"),
]


def detect_block_reason(html: str) -> Optional[str]:
    """Detect common bot/blocked page signals in HTML."""
    if not html:
        return None
    haystack = " ".join(html.lower().split())
    for needle, reason in BLOCK_PATTERNS:
        if needle in haystack:
            return reason
    return None


@dataclass(frozen=True)
class FetchPolicy:
    """Request policy for the crawled site."""

    timeout: httpx.Timeout = None  # Will be set to default if None
    treat_401_as_blocked: bool = True
    treat_403_as_blocked: bool = True
    check_block_content: bool = True

    def __post_init__(self):
        """Set default timeout if not provided."""
        if self.timeout is None:
            object.__setattr__(
                self,
                'timeout',
                httpx.Timeout(connect=10.0, read=30.0, write=10.0, pool=10.0)
            )

    @classmethod
    def from_settings(cls, settings) -> "FetchPolicy":
        return cls(timeout=httpx.Timeout(settings.request_timeout, connect=10.0))


@dataclass
class FetchResponse:
    """A successfully fetched page."""

    url: str
    status_code: int
    text: str
    latency_ms: float
    headers: dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        return json.loads(self.text)


def default_headers(user_agent: str) -> dict[str, str]:
    """Get default browser-like headers."""
    return {
        "User-Agent": user_agent,
        "Accept": "text/html, application/xhtml+xml, application/xml; q=0.9, application/json; q=0.8, */*; q=0.7",
        "Accept-Language": "en-US, en; q=0.9",
        "Accept-Encoding": "gzip, deflate, br",
        "Connection": "keep-alive",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Upgrade-Insecure-Requests": "1",
    }


def _retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


class HttpFetcher:
    """Fetches pages through the current identity (proxy + user agent)."""

    def __init__(
        self,
        identities: IdentityProvider,
        policy: Optional[FetchPolicy] = None,
        max_connections: int = 50,
    ):
        self.identities = identities
        self.policy = policy or FetchPolicy()
        self.max_connections = max_connections
        # One client per proxy so connections are reused within an identity
        self._clients: dict[Optional[str], httpx.AsyncClient] = {}
        self._client_lock = asyncio.Lock()

    async def _get_client(self, identity: Identity) -> httpx.AsyncClient:
        key = identity.proxy_url
        if key not in self._clients:
            async with self._client_lock:
                # Double-check after acquiring lock
                if key not in self._clients:
                    self._clients[key] = httpx.AsyncClient(
                        proxy=key,
                        timeout=self.policy.timeout,
                        limits=httpx.Limits(max_connections=self.max_connections),
                        follow_redirects=True,
                    )
        return self._clients[key]

    async def fetch(self, url: str, expect_json: bool = False) -> FetchResponse:
        """
        Fetch a URL once.

        Raises:
            BlockingError: 401/403, a /blocked redirect or a bot-wall page
            RateLimitError: 429
            PermanentURLError: 404/410 and other non-retryable 4xx statuses
            NetworkError: Transport failures, 5xx responses and empty bodies
        """
        identity = self.identities.current
        client = await self._get_client(identity)
        started = time.monotonic()
        try:
            response = await client.get(url, headers=default_headers(identity.user_agent))
        except httpx.TransportError as e:
            raise NetworkError(
                f"Transport error ({type(e).__name__}) for {url}",
                context={"url": url},
            ) from e
        latency_ms = (time.monotonic() - started) * 1000

        if "/blocked" in str(response.url).lower():
            raise BlockingError(f"Blocked redirect: {response.url}", context={"url": url})

        sc = response.status_code
        if sc in (401, 403):
            if (sc == 401 and self.policy.treat_401_as_blocked) or \
               (sc == 403 and self.policy.treat_403_as_blocked):
                raise BlockingError(f"HTTP {sc} for {url}", context={"url": url, "status": sc})
        if sc == 429:
            raise RateLimitError(
                f"HTTP 429 too many requests for {url}",
                retry_after=_retry_after(response),
                context={"url": url, "status": sc},
            )
        if sc in (404, 410):
            raise PermanentURLError(f"HTTP {sc} for {url}", context={"url": url, "status": sc})
        if 500 <= sc < 600:
            raise NetworkError(f"Server error {sc} for {url}", context={"url": url, "status": sc})
        if sc >= 400:
            raise PermanentURLError(f"Unexpected status {sc} for {url}", context={"url": url, "status": sc})

        text = response.text
        if not text.strip():
            raise NetworkError(f"Empty response for {url}", context={"url": url, "status": sc})
        if self.policy.check_block_content and not expect_json:
            reason = detect_block_reason(text)
            if reason:
                raise BlockingError(f"{reason} on {url}", context={"url": url, "status": sc})

        await self.identities.report_success(identity)
        return FetchResponse(
            url=str(response.url),
            status_code=sc,
            text=text,
            latency_ms=latency_ms,
            headers=dict(response.headers),
        )

    async def close(self):
        """Close HTTP clients."""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
