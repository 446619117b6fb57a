"""
Outbound HTTP for the ingestion pipeline.

Every request goes through three layers:
  1. RateGate — one per process; spaces request dispatches by a minimum
     interval. Dispatch is serialized, request lifetimes overlap freely.
  2. IdentityRotator — one per FetchClient; round-robin user agent and
     proxy endpoint for each call.
  3. Retry loop — exponential backoff with jitter for transient failures
     (timeouts, connection resets, 5xx, 429). Permanent failures (other
     4xx, bad URL, unsupported scheme, redirect loops) raise at once.

Failures surface as FetchError so callers never have to know httpx's
exception tree.
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

import httpx

from ..config import BASE_HEADERS, USER_AGENTS, get_settings

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """A request that failed after retries, or failed permanently."""

    def __init__(self, url: str, message: str, status: Optional[int] = None, transient: bool = True):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status = status
        self.transient = transient


class RateGate:
    """Global minimum gap between request dispatches.

    Each caller reserves the next free slot under the lock, then sleeps
    outside it until the slot arrives. The lock is created lazily so it
    binds to whichever event loop first uses it.
    """

    def __init__(self, min_interval: float):
        self.min_interval = max(0.0, min_interval)
        self._next_slot = 0.0
        self._lock: Optional[asyncio.Lock] = None
        self._loop = None

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._loop is not loop:
            self._lock = asyncio.Lock()
            self._loop = loop
        return self._lock

    async def wait(self) -> None:
        """Block until this caller may dispatch, then record the dispatch."""
        async with self._get_lock():
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
        delay = slot - now
        if delay > 0:
            await asyncio.sleep(delay)


_rate_gate: Optional[RateGate] = None


def get_rate_gate() -> RateGate:
    """Process-wide RateGate, created from settings on first use."""
    global _rate_gate
    if _rate_gate is None:
        _rate_gate = RateGate(get_settings().rate_limit_delay)
    return _rate_gate


class IdentityRotator:
    """Round-robin over user agents and proxy endpoints. Not shared."""

    def __init__(self, user_agents: Optional[List[str]] = None, proxies: Optional[List[Optional[str]]] = None):
        self._user_agents = list(user_agents or USER_AGENTS)
        self._proxies: List[Optional[str]] = list(proxies or [None])
        self._ua_index = 0
        self._proxy_index = 0

    def next_user_agent(self) -> str:
        ua = self._user_agents[self._ua_index % len(self._user_agents)]
        self._ua_index += 1
        return ua

    def next_proxy(self) -> Optional[str]:
        proxy = self._proxies[self._proxy_index % len(self._proxies)]
        self._proxy_index += 1
        return proxy


# Fail immediately, retrying cannot help
_PERMANENT_ERRORS = (httpx.InvalidURL, httpx.UnsupportedProtocol, httpx.TooManyRedirects)


def _is_transient_status(status: int) -> bool:
    return status >= 500 or status == 429


class FetchClient:
    """
    Rate-limited, retrying HTTP GET client.

    Usage:
        async with FetchClient() as client:
            html = await client.fetch_text(url)

    `transport` is passed straight to httpx (tests use httpx.MockTransport);
    when given, proxies are ignored.
    """

    def __init__(
        self,
        settings=None,
        *,
        rate_gate: Optional[RateGate] = None,
        identities: Optional[IdentityRotator] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._gate = rate_gate or get_rate_gate()
        self._transport = transport
        proxies = [] if transport is not None else self.settings.proxies
        self._identities = identities or IdentityRotator(proxies=proxies)
        self._clients: Dict[Optional[str], httpx.AsyncClient] = {}

    async def __aenter__(self) -> "FetchClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self) -> None:
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.aclose()

    def _client_for(self, proxy: Optional[str]) -> httpx.AsyncClient:
        client = self._clients.get(proxy)
        if client is None:
            kwargs: Dict[str, Any] = {
                "timeout": httpx.Timeout(self.settings.request_timeout),
                "follow_redirects": True,
                "max_redirects": self.settings.max_redirects,
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            elif proxy:
                kwargs["proxy"] = proxy
            client = httpx.AsyncClient(**kwargs)
            self._clients[proxy] = client
        return client

    def _backoff(self, attempt: int) -> float:
        return self.settings.retry_base_delay * (2 ** attempt) + random.uniform(0, self.settings.retry_jitter)

    async def fetch(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        accept: Optional[str] = None,
    ) -> httpx.Response:
        """GET `url`, returning the first response below the fail status."""
        attempts = max(1, self.settings.fetch_max_attempts)
        last_error: Optional[FetchError] = None

        for attempt in range(attempts):
            await self._gate.wait()

            request_headers = dict(BASE_HEADERS)
            request_headers["User-Agent"] = self._identities.next_user_agent()
            if accept:
                request_headers["Accept"] = accept
            if headers:
                request_headers.update(headers)
            client = self._client_for(self._identities.next_proxy())

            try:
                response = await client.get(url, headers=request_headers, params=params)
            except _PERMANENT_ERRORS as e:
                raise FetchError(url, f"{type(e).__name__}: {e}", transient=False) from e
            except httpx.RequestError as e:
                last_error = FetchError(url, f"{type(e).__name__}: {e}")
            else:
                status = response.status_code
                if status < self.settings.fail_status:
                    return response
                if not _is_transient_status(status):
                    raise FetchError(url, f"HTTP {status}", status=status, transient=False)
                last_error = FetchError(url, f"HTTP {status}", status=status)

            if attempt < attempts - 1:
                delay = self._backoff(attempt)
                logger.debug(f"Retry {attempt + 1}/{attempts - 1} for {url} in {delay:.2f}s: {last_error}")
                await asyncio.sleep(delay)

        logger.debug(f"[FAIL] {url}: giving up after {attempts} attempts")
        raise last_error

    async def fetch_text(self, url: str, **kwargs) -> str:
        response = await self.fetch(url, **kwargs)
        return response.text

    async def fetch_json(self, url: str, **kwargs) -> Any:
        response = await self.fetch(url, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(url, f"Invalid JSON: {e}", status=response.status_code, transient=False) from e
