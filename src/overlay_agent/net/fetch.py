"""
Resilient HTTP fetch.

Retries only on HTTP 429, 5xx, network errors and timeouts, with exponential
backoff ``min(1000 * 2**attempt, 8000)`` ms. Each attempt is bounded by its
own timeout; the backoff sleep is not part of it.
"""

import asyncio
import json as jsonlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from ..errors import FetchTimeoutError, NetworkError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_MS = 30000
SINGLE_SHOT_TIMEOUT_MS = 15000
BASE_BACKOFF_MS = 1000
MAX_BACKOFF_MS = 8000


def backoff_delay_ms(attempt: int) -> int:
    return min(BASE_BACKOFF_MS * (2 ** attempt), MAX_BACKOFF_MS)


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


@dataclass
class FetchResponse:
    """Fully-read HTTP response"""
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    url: str = ""
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return jsonlib.loads(self.body)


class ResilientFetch:
    """aiohttp-based fetch with per-attempt timeouts and bounded retries"""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        default_headers: Optional[Dict[str, str]] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._session = session
        self._owns_session = session is None
        self.default_headers = default_headers or {}
        self.max_retries = max_retries
        self.timeout_ms = timeout_ms
        self._sleep = sleep

    async def __aenter__(self) -> "ResilientFetch":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _attempt(self, method: str, url: str, headers: Dict[str, str], **kwargs) -> FetchResponse:
        session = self._get_session()
        async with session.request(method, url, headers=headers, **kwargs) as resp:
            body = await resp.read()
            return FetchResponse(
                status=resp.status,
                body=body,
                headers=dict(resp.headers),
                url=str(resp.url),
            )

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        max_retries: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        **kwargs,
    ) -> FetchResponse:
        """Perform a request with retry/backoff.

        Args:
            url: Absolute URL
            method: HTTP method
            headers: Extra headers merged over the defaults
            max_retries: Retries after the first attempt (default 3)
            timeout_ms: Per-attempt timeout in milliseconds (default 30000)
            **kwargs: Passed to ``ClientSession.request`` (``json``, ``data``, ``params``)

        Returns:
            FetchResponse; non-retryable statuses are returned as-is

        Raises:
            FetchTimeoutError: Last attempt timed out
            NetworkError: Last attempt failed at the transport level
        """
        retries = self.max_retries if max_retries is None else max_retries
        timeout_s = (self.timeout_ms if timeout_ms is None else timeout_ms) / 1000
        merged_headers = {**self.default_headers, **(headers or {})}
        last_error: Optional[Exception] = None

        for attempt in range(retries + 1):
            try:
                resp = await asyncio.wait_for(
                    self._attempt(method, url, merged_headers, **kwargs),
                    timeout=timeout_s,
                )
                resp.attempts = attempt + 1
                if is_retryable_status(resp.status) and attempt < retries:
                    delay = backoff_delay_ms(attempt)
                    logger.warning(f"{method} {url} returned {resp.status}, retrying in {delay}ms "
                                   f"(attempt {attempt + 1}/{retries + 1})")
                    await self._sleep(delay / 1000)
                    continue
                return resp
            except asyncio.TimeoutError:
                last_error = FetchTimeoutError(
                    f"{method} {url} timed out after {timeout_s:g}s",
                    {"url": url, "attempt": attempt},
                )
            except aiohttp.ClientError as e:
                last_error = NetworkError(f"{method} {url} failed: {e}", {"url": url, "attempt": attempt})

            if attempt < retries:
                delay = backoff_delay_ms(attempt)
                logger.warning(f"{last_error.message}; retrying in {delay}ms")
                await self._sleep(delay / 1000)

        logger.error(f"{method} {url} failed after {retries + 1} attempts")
        raise last_error or NetworkError(f"{method} {url} failed after retries", {"url": url})

    async def fetch_once(self, url: str, method: str = "GET", timeout_ms: int = SINGLE_SHOT_TIMEOUT_MS,
                         **kwargs) -> FetchResponse:
        """Single timeout-bounded attempt, no retries"""
        return await self.fetch(url, method=method, max_retries=0, timeout_ms=timeout_ms, **kwargs)
