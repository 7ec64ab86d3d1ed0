import json
import time
import asyncio
import aiohttp
import socket
from contextlib import asynccontextmanager
from typing import Dict, Optional, Callable, Awaitable, Any, Tuple
from aiohttp.resolver import ThreadedResolver
from ..models import log, REQUEST_TIMEOUT, MAX_RETRIES, RETRY_DELAY
from ..exceptions import FetchError

DEFAULT_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Accept-Language': 'en-US,en;q=0.5',
}
# The API refuses plain JSON accept headers behind its DDoS guard
API_HEADERS = {'Accept': 'text/css'}
NON_RETRY_STATUSES = {400, 401, 403, 404, 410}


class RateLimiter:
    """Grant request slots one at a time, at least ``interval`` seconds apart.

    Callers queue on a single asyncio lock, so the spacing holds even when
    several coroutines ask for a slot at once. ``time_fn`` and ``sleep_fn``
    are injectable for tests.
    """

    def __init__(
        self,
        interval: float,
        time_fn: Optional[Callable[[], float]] = None,
        sleep_fn: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.interval = max(0.0, float(interval))
        self._time = time_fn or time.monotonic
        self._sleep = sleep_fn or asyncio.sleep
        self._lock = asyncio.Lock()
        self._last: Optional[float] = None

    async def acquire(self) -> None:
        async with self._lock:
            if self._last is not None:
                wait = self._last + self.interval - self._time()
                if wait > 0:
                    log.debug(f"Rate limiter waiting {wait:.2f}s")
                    await self._sleep(wait)
            self._last = self._time()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


@asynccontextmanager
async def get_session():
    # Use threaded DNS to avoid pycares issues on Termux/Android and force IPv4 where needed
    connector = aiohttp.TCPConnector(
        resolver=ThreadedResolver(),
        ttl_dns_cache=300,
        family=socket.AF_INET
    )
    async with aiohttp.ClientSession(timeout=REQUEST_TIMEOUT, connector=connector) as session:
        yield session


async def fetch_with_retry(
    session,
    url,
    response_type='json',
    limiter: Optional[RateLimiter] = None,
    params: Optional[Dict[str, str]] = None,
    extra_headers: Optional[Dict[str, str]] = None,
    non_retry_statuses=NON_RETRY_STATUSES,
    max_retries: int = MAX_RETRIES,
    backoff: float = RETRY_DELAY,
    timeout=None
) -> Tuple[Any, Any]:
    """Fetch ``url`` and return ``(payload, headers)``.

    Every attempt waits for a slot on ``limiter``. Raises FetchError once the
    status is non-retryable or the retries are used up.
    """
    if response_type not in ("json", "bytes", "text"):
        raise ValueError(f"Unknown response_type {response_type!r}")
    headers = dict(DEFAULT_HEADERS)
    if extra_headers:
        headers.update(extra_headers)

    last_status = None
    last_reason = ""
    for attempt in range(max_retries):
        if limiter:
            await limiter.acquire()
        try:
            async with session.get(url, params=params, headers=headers, timeout=timeout or REQUEST_TIMEOUT) as response:
                last_status = response.status

                if response.status == 429:
                    try:
                        retry_after = int(response.headers.get("Retry-After", 10))
                    except ValueError:
                        retry_after = 10
                    wait_time = max(retry_after, backoff * (2 ** attempt))
                    log.warning(f"Rate limit hit (429). Cooling down for {wait_time}s...")
                    await asyncio.sleep(wait_time)
                    continue

                if response.status in non_retry_statuses:
                    log.warning(f"Non-retryable HTTP {response.status} for {url}")
                    raise FetchError(url, response.status)

                if response.status >= 400:
                    log.warning(f"HTTP {response.status} for {url}")
                    response.raise_for_status()

                if response_type == 'json': return await response.json(content_type=None), response.headers
                elif response_type == 'bytes': return await response.read(), response.headers
                else: return await response.text(encoding='utf-8', errors='replace'), response.headers

        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as e:
            last_reason = str(e) or e.__class__.__name__
            wait = backoff * (2 ** attempt)
            if attempt + 1 == max_retries:
                log.warning(f"Attempt {attempt + 1}/{max_retries} failed for {url}: {last_reason}. Giving up.")
                break
            log.warning(f"Attempt {attempt + 1}/{max_retries} failed for {url}: {last_reason}. Retrying in {wait}s.")
            await asyncio.sleep(wait)

    raise FetchError(url, last_status if last_status and last_status >= 400 else None, last_reason)
