"""Proxy and browser identity rotation."""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENTS = [
    f"Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/{version}.0.0.0 Safari/537.36"
    for version in range(118, 125)
] + [
    f"Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/{version}.0.0.0 Safari/537.36"
    for version in range(118, 125)
] + [
    f"Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:{version}.0) Gecko/20100101 Firefox/{version}.0"
    for version in range(118, 124)
] + [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
]


@dataclass(frozen=True)
class ProxyInfo:
    """Proxy information for use in fetchers."""

    id: int
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None
    scheme: str = "http"

    @property
    def url(self) -> str:
        """Get proxy URL for httpx."""
        if self.username and self.password:
            return f"{self.scheme}://{self.username}:{self.password}@{self.host}:{self.port}"
        return f"{self.scheme}://{self.host}:{self.port}"

    @classmethod
    def from_url(cls, proxy_id: int, url: str) -> "ProxyInfo":
        parts = urlsplit(url)
        if not parts.hostname or not parts.port:
            raise ValueError(f"Proxy URL needs a host and port: {url}")
        return cls(
            id=proxy_id,
            host=parts.hostname,
            port=parts.port,
            username=parts.username,
            password=parts.password,
            scheme=parts.scheme or "http",
        )


@dataclass(frozen=True)
class Identity:
    """What the site sees of us: exit proxy and browser user agent."""

    session_id: int
    user_agent: str
    proxy: Optional[ProxyInfo] = None

    @property
    def proxy_url(self) -> Optional[str]:
        return self.proxy.url if self.proxy else None


class IdentityRotationError(RuntimeError):
    """Raised when no fresh identity is available."""
    pass


class IdentityProvider:
    """
    Round-robin proxy rotation with per-proxy cooldowns.

    ``rotate`` puts the current proxy in cooldown (it was just blocked) and
    switches to the next proxy outside cooldown, together with a different
    user agent. Without configured proxies only the user agent changes.
    """

    def __init__(
        self,
        proxies: Iterable[ProxyInfo] = (),
        user_agents: Optional[list[str]] = None,
        cooldown_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self._proxies = list(proxies)
        self._user_agents = list(user_agents or DEFAULT_USER_AGENTS)
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self._cooldowns: dict[int, float] = {}
        self._current_index = 0
        self._session_counter = 0
        self.rotations = 0
        self._current = self._new_identity(self._proxies[0] if self._proxies else None)

    @classmethod
    def from_urls(cls, urls: Iterable[str], **kwargs) -> "IdentityProvider":
        proxies = [ProxyInfo.from_url(index, url) for index, url in enumerate(urls)]
        if proxies:
            logger.info(f"Loaded {len(proxies)} proxies")
        return cls(proxies, **kwargs)

    @property
    def current(self) -> Identity:
        return self._current

    def _new_identity(self, proxy: Optional[ProxyInfo], avoid_agent: Optional[str] = None) -> Identity:
        agents = [a for a in self._user_agents if a != avoid_agent] or self._user_agents
        self._session_counter += 1
        return Identity(
            session_id=self._session_counter,
            user_agent=self._rng.choice(agents),
            proxy=proxy,
        )

    def _in_cooldown(self, proxy_id: int, now: float) -> bool:
        until = self._cooldowns.get(proxy_id)
        if until is None:
            return False
        if now >= until:
            del self._cooldowns[proxy_id]
            return False
        return True

    async def rotate(self) -> Identity:
        """
        Switch to a fresh identity.

        Raises:
            IdentityRotationError: If every configured proxy is in cooldown.
                The current identity stays in use.
        """
        async with self._lock:
            now = self._clock()
            previous = self._current
            if previous.proxy is not None:
                self._cooldowns[previous.proxy.id] = now + self._cooldown_seconds

            proxy = None
            if self._proxies:
                for offset in range(len(self._proxies)):
                    candidate = self._proxies[(self._current_index + 1 + offset) % len(self._proxies)]
                    if not self._in_cooldown(candidate.id, now):
                        proxy = candidate
                        self._current_index = self._proxies.index(candidate)
                        break
                if proxy is None:
                    raise IdentityRotationError(
                        f"All {len(self._proxies)} proxies are in cooldown"
                    )

            self._current = self._new_identity(proxy, avoid_agent=previous.user_agent)
            self.rotations += 1
            logger.info(
                f"Rotated identity to session {self._current.session_id}"
                + (f" via proxy {proxy.host}:{proxy.port}" if proxy else "")
            )
            return self._current

    async def report_success(self, identity: Identity) -> None:
        """A request through ``identity`` worked; lift any cooldown on its proxy."""
        if identity.proxy is None:
            return
        async with self._lock:
            self._cooldowns.pop(identity.proxy.id, None)
