import asyncio
import re
import pytest
import aiohttp
from unittest.mock import patch
from aioresponses import aioresponses

from kemono_epub.core.session import RateLimiter, fetch_with_retry
from kemono_epub.exceptions import FetchError


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def time(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_rate_limiter_spaces_sequential_calls():
    clock = FakeClock()
    limiter = RateLimiter(0.5, time_fn=clock.time, sleep_fn=clock.sleep)
    await limiter.acquire()
    await limiter.acquire()
    clock.now += 2
    await limiter.acquire()
    assert clock.sleeps == [0.5]

@pytest.mark.asyncio
async def test_rate_limiter_serializes_concurrent_callers():
    clock = FakeClock()
    limiter = RateLimiter(1.0, time_fn=clock.time, sleep_fn=clock.sleep)
    granted = []

    async def worker():
        async with limiter:
            granted.append(clock.time())

    await asyncio.gather(*[worker() for _ in range(4)])
    assert granted == [100.0, 101.0, 102.0, 103.0]

@pytest.mark.asyncio
async def test_fetch_with_retry_returns_json_and_headers():
    url = "https://kemono.cr/api/v1/patreon/user/1/profile"
    with aioresponses() as m:
        m.get(url, payload={"name": "x"}, headers={"X-Test": "1"})
        async with aiohttp.ClientSession() as session:
            data, headers = await fetch_with_retry(session, url, 'json')
    assert data == {"name": "x"}
    assert headers["X-Test"] == "1"

@pytest.mark.asyncio
async def test_fetch_with_retry_does_not_retry_404():
    url = "https://kemono.cr/api/v1/patreon/user/1/post/404"
    with aioresponses() as m:
        m.get(url, status=404)
        async with aiohttp.ClientSession() as session:
            with pytest.raises(FetchError) as info:
                await fetch_with_retry(session, url, 'json', max_retries=3)
    assert info.value.status == 404

@pytest.mark.asyncio
async def test_fetch_with_retry_retries_server_errors():
    url = "https://kemono.cr/data/aa/img.png"
    with aioresponses() as m:
        m.get(url, status=500)
        m.get(url, status=200, body=b"PNGDATA", content_type="image/png")
        with patch("asyncio.sleep", return_value=None):
            async with aiohttp.ClientSession() as session:
                data, headers = await fetch_with_retry(session, url, 'bytes', max_retries=2)
    assert data == b"PNGDATA"
    assert headers["Content-Type"] == "image/png"

@pytest.mark.asyncio
async def test_fetch_with_retry_gives_up_after_connection_errors():
    url = re.compile(r"^https://kemono\.cr/down.*")
    with aioresponses() as m:
        m.get(url, exception=aiohttp.ClientConnectionError("boom"), repeat=True)
        with patch("asyncio.sleep", return_value=None):
            async with aiohttp.ClientSession() as session:
                with pytest.raises(FetchError) as info:
                    await fetch_with_retry(session, "https://kemono.cr/down", 'text', max_retries=2)
    assert info.value.status is None
    assert "boom" in str(info.value)

@pytest.mark.asyncio
async def test_fetch_with_retry_rejects_unknown_type():
    async with aiohttp.ClientSession() as session:
        with pytest.raises(ValueError):
            await fetch_with_retry(session, "https://kemono.cr", 'xml')
