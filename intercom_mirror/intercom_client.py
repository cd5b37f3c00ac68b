"""
Intercom API client used by the mirror.

Walks Intercom's paginated list endpoints into flat lists, fetches single
conversation details, and issues cheap count-only probes.

Supports both sync and async modes:
- Sync: Uses requests.Session (for the CLI thread preview)
- Async: Uses aiohttp (for refreshes and thread batches)

Intercom paginates in two styles: `pages.next` is either a ready-made URL
string, or an object of query parameters (e.g. {"per_page": 50,
"starting_after": "..."}) that has to be appended to the original path.
"""

import asyncio
import logging
import os
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional, Sequence
from urllib.parse import quote, urlencode

import aiohttp
import requests

from .config import DEFAULT_API_BASE, DEFAULT_API_VERSION, MirrorConfig, clean_token
from .rate_limiter import NoopRateLimiter, RateLimiter, build_rate_limiter

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Transport failure, non-2xx status or unparseable body from Intercom."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class MalformedResponseError(ValueError):
    """Response body has no recognizable array payload."""


def extract_array(data: Any, preferred_keys: Sequence[str] = ()) -> list:
    """
    Pull the record array out of a list response.

    Order: preferred keys, then the first array-valued top-level key,
    then a key literally named `data`.

    Raises:
        MalformedResponseError: if no array can be found
    """
    if not isinstance(data, dict):
        raise MalformedResponseError(f"expected a JSON object, got {type(data).__name__}")

    for key in preferred_keys:
        if isinstance(data.get(key), list):
            return data[key]

    for value in data.values():
        if isinstance(value, list):
            return value

    if isinstance(data.get("data"), list):
        return data["data"]

    raise MalformedResponseError(f"no array found in response keys {sorted(data.keys())}")


def build_next_url(base_url: str, original_path: str, data: dict) -> Optional[str]:
    """
    Work out the next page URL from a list response, or None when done.

    A string cursor is used verbatim. An object cursor is URL-encoded onto
    the original path with its query string stripped.
    """
    pages = data.get("pages") if isinstance(data, dict) else None
    if not isinstance(pages, dict):
        return None

    next_page = pages.get("next")
    if isinstance(next_page, str) and next_page:
        return next_page
    if isinstance(next_page, dict) and next_page:
        clean_path = original_path.split("?", 1)[0]
        params = {key: str(value) for key, value in next_page.items()}
        return f"{base_url}{clean_path}?{urlencode(params, quote_via=quote)}"
    return None


class IntercomClient:
    """Client for walking Intercom collections and conversation details."""

    # HTTP timeout: (connect_timeout, read_timeout) in seconds
    DEFAULT_TIMEOUT = (10, 30)

    # 3 retries with 2s base delay = max 14s total wait (2+4+8)
    MAX_RETRIES = 3
    RETRY_DELAY_BASE = 2  # seconds, exponential backoff: 2s, 4s, 8s
    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    # Warn when Intercom reports fewer remaining requests than this
    RATE_LIMIT_WARN_THRESHOLD = 100

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_base: str = DEFAULT_API_BASE,
        api_version: str = DEFAULT_API_VERSION,
        timeout: tuple = None,
        max_retries: int = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.access_token = access_token or clean_token(os.getenv("INTERCOM_ACCESS_TOKEN"))
        if not self.access_token:
            raise ValueError("INTERCOM_ACCESS_TOKEN not set")

        self.base_url = api_base.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else self.MAX_RETRIES
        self.rate_limiter = rate_limiter or NoopRateLimiter()

        self.session = requests.Session()
        self.session.headers.update(self._headers())

    @classmethod
    def from_config(cls, config: MirrorConfig, rate_limiter: Optional[RateLimiter] = None) -> "IntercomClient":
        return cls(
            access_token=config.access_token,
            api_base=config.api_base,
            api_version=config.api_version,
            rate_limiter=rate_limiter or build_rate_limiter(config.max_rps),
        )

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Intercom-Version": self.api_version,
        }

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    @staticmethod
    def _parse_retry_after(header_value: str) -> int:
        """
        Parse Retry-After header value.

        The header can be either:
        - An integer (seconds to wait)
        - An HTTP-date (absolute time to retry after)

        Returns:
            Number of seconds to wait (minimum 1)
        """
        try:
            return max(1, int(header_value))
        except (ValueError, TypeError):
            try:
                retry_at = parsedate_to_datetime(header_value)
                if retry_at.tzinfo is None:
                    retry_at = retry_at.replace(tzinfo=timezone.utc)
                delta = (retry_at - datetime.now(timezone.utc)).total_seconds()
                return max(1, int(delta))
            except (ValueError, TypeError):
                # 10s is a typical rate limit window
                return 10

    @staticmethod
    def _add_jitter(base_delay: float) -> float:
        """
        Add 0-50% jitter to a delay so concurrent retries don't collide.

        Returns:
            Delay between 100% and 150% of base_delay
        """
        jitter = random.uniform(0, 0.5 * base_delay)
        return base_delay + jitter

    def _retry_delay(self, status: Optional[int], headers: Any, attempt: int) -> float:
        """Backoff for a retryable response, honoring Retry-After on 429."""
        retry_after = headers.get("Retry-After") if (status == 429 and headers is not None) else None
        if retry_after:
            base_delay = self._parse_retry_after(retry_after)
        else:
            base_delay = self.RETRY_DELAY_BASE * (2 ** attempt)
        return self._add_jitter(base_delay)

    def _log_rate_limit(self, headers: Any, url: str) -> None:
        remaining = headers.get("X-RateLimit-Remaining") if headers is not None else None
        if remaining is None:
            return
        try:
            remaining_int = int(remaining)
        except (ValueError, TypeError):
            return  # Ignore invalid header values
        if remaining_int < self.RATE_LIMIT_WARN_THRESHOLD:
            logger.warning(f"Rate limit low: {remaining_int} requests remaining on {url}")
        else:
            logger.debug(f"Rate limit remaining: {remaining_int} on {url}")

    # ==================== SYNC METHODS ====================

    def _request_with_retry(self, url: str, params: Optional[dict] = None) -> dict:
        """
        GET with retry on transient errors.

        Retries on 429 (with Retry-After support), 5xx and connection errors.
        Other 4xx responses fail immediately.

        Raises:
            FetchError: on non-retryable errors or after max retries
        """
        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                if attempt < self.max_retries:
                    delay = self._add_jitter(self.RETRY_DELAY_BASE * (2 ** attempt))
                    logger.warning(
                        f"Intercom API connection error: {e}, "
                        f"retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries + 1})"
                    )
                    time.sleep(delay)
                    continue
                raise FetchError(f"Connection error for {url}: {e}", url=url) from e

            self._log_rate_limit(response.headers, url)

            if response.status_code in self.RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                delay = self._retry_delay(response.status_code, response.headers, attempt)
                logger.warning(
                    f"Intercom API error {response.status_code} on {url}, "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries + 1})"
                )
                time.sleep(delay)
                continue

            if response.status_code >= 400:
                raise FetchError(
                    f"HTTP error {response.status_code} for {url}",
                    status_code=response.status_code,
                    url=url,
                )
            try:
                return response.json()
            except ValueError as e:
                raise FetchError(
                    f"Invalid JSON from {url}: {e}",
                    status_code=response.status_code,
                    url=url,
                ) from e

        raise RuntimeError("Unexpected retry loop exit")

    def _get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        """Make a GET request to Intercom API with retry."""
        return self._request_with_retry(self._url(endpoint), params=params)

    def get_conversation(self, conv_id: str) -> dict:
        """Fetch a single conversation with all its parts."""
        return self._get(f"/conversations/{conv_id}")

    # ==================== ASYNC METHODS ====================

    async def _request_with_retry_async(
        self,
        session: aiohttp.ClientSession,
        url: str,
        params: Optional[dict] = None,
    ) -> dict:
        """
        Async GET with the same retry policy as the sync version.

        Every attempt takes a token from the rate limiter first.

        Raises:
            FetchError: on non-retryable errors or after max retries
        """
        for attempt in range(self.max_retries + 1):
            await self.rate_limiter.acquire()
            try:
                async with session.get(url, params=params) as response:
                    self._log_rate_limit(response.headers, url)

                    if response.status in self.RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                        delay = self._retry_delay(response.status, response.headers, attempt)
                        logger.warning(
                            f"Intercom API error {response.status} on {url}, "
                            f"retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries + 1})"
                        )
                    elif response.status >= 400:
                        raise FetchError(
                            f"HTTP error {response.status} for {url}",
                            status_code=response.status,
                            url=url,
                        )
                    else:
                        try:
                            return await response.json()
                        except (ValueError, aiohttp.ContentTypeError) as e:
                            raise FetchError(
                                f"Invalid JSON from {url}: {e}",
                                status_code=response.status,
                                url=url,
                            ) from e

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt < self.max_retries:
                    delay = self._add_jitter(self.RETRY_DELAY_BASE * (2 ** attempt))
                    logger.warning(
                        f"Intercom API connection error: {e!r}, "
                        f"retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries + 1})"
                    )
                else:
                    raise FetchError(f"Connection error for {url}: {e!r}", url=url) from e

            await asyncio.sleep(delay)

        raise RuntimeError("Unexpected retry loop exit")

    def _get_aiohttp_session(self) -> aiohttp.ClientSession:
        """Create an aiohttp session with auth headers and timeouts matching the sync client."""
        timeout = aiohttp.ClientTimeout(
            connect=self.timeout[0],
            sock_read=self.timeout[1],
            total=self.timeout[0] + self.timeout[1],
        )
        return aiohttp.ClientSession(timeout=timeout, headers=self._headers())

    def open_session(self) -> aiohttp.ClientSession:
        """Session for callers issuing many requests (use as `async with`)."""
        return self._get_aiohttp_session()

    async def fetch_all(
        self,
        path: str,
        preferred_keys: Sequence[str] = (),
        max_pages: Optional[int] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> list:
        """
        Walk a paginated endpoint and return every record as one flat list.

        Pages are fetched strictly in order: the next cursor is only known
        once the current page has arrived.

        Args:
            path: Endpoint path, may carry a query string ("/contacts?per_page=50")
            preferred_keys: Array keys to try first ("contacts", "data", ...)
            max_pages: Stop after this many pages (None = until exhausted)
            session: Reuse an existing aiohttp session

        Raises:
            FetchError: on any HTTP or transport failure
        """
        if session is None:
            async with self._get_aiohttp_session() as own_session:
                return await self.fetch_all(path, preferred_keys, max_pages, session=own_session)

        results = []
        next_url = self._url(path)
        page_count = 0

        while next_url:
            logger.debug(f"Fetching: {next_url}")
            data = await self._request_with_retry_async(session, next_url)
            try:
                results.extend(extract_array(data, preferred_keys))
            except MalformedResponseError as e:
                logger.error(f"Malformed list response from {next_url}: {e}")
                break

            page_count += 1
            if max_pages and page_count >= max_pages:
                break
            next_url = build_next_url(self.base_url, path, data)

        return results

    async def get_conversation_async(
        self,
        conv_id: str,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> dict:
        """Fetch a single conversation by ID (async version).

        Pass a session when fetching many conversations.
        """
        url = self._url(f"/conversations/{conv_id}")
        if session is None:
            async with self._get_aiohttp_session() as own_session:
                return await self._request_with_retry_async(own_session, url)
        return await self._request_with_retry_async(session, url)

    async def probe_count(
        self,
        path: str,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> int:
        """
        Read a total-count signal from a one-item page.

        Uses `total_count`, falling back to `pages.total_pages` (equal to the
        total when per_page=1).
        """
        if session is None:
            async with self._get_aiohttp_session() as own_session:
                return await self.probe_count(path, session=own_session)

        data = await self._request_with_retry_async(session, self._url(path))
        total = data.get("total_count") if isinstance(data, dict) else None
        if not total and isinstance(data, dict):
            total = (data.get("pages") or {}).get("total_pages")
        try:
            return int(total or 0)
        except (TypeError, ValueError):
            return 0
