"""
ResilientFetch tests against a local aiohttp server
リトライ・バックオフ・タイムアウトのテスト
"""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from overlay_agent.errors import FetchTimeoutError, NetworkError
from overlay_agent.net.fetch import ResilientFetch, backoff_delay_ms, is_retryable_status


class Recorder:
    """Injectable sleep that records requested delays without waiting"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest_asyncio.fixture
async def server():
    hits = {"flaky": 0, "missing": 0, "broken": 0}

    async def flaky(request):
        hits["flaky"] += 1
        if hits["flaky"] <= 3:
            return web.Response(status=429, text="slow down")
        return web.json_response({"ok": True})

    async def missing(request):
        hits["missing"] += 1
        return web.Response(status=404, text="nope")

    async def broken(request):
        hits["broken"] += 1
        return web.Response(status=503, text="down")

    async def slow(request):
        await asyncio.sleep(1)
        return web.Response(text="late")

    async def echo(request):
        return web.json_response({"body": await request.json(), "auth": request.headers.get("Authorization")})

    app = web.Application()
    app.router.add_get("/flaky", flaky)
    app.router.add_get("/missing", missing)
    app.router.add_get("/broken", broken)
    app.router.add_get("/slow", slow)
    app.router.add_post("/echo", echo)

    srv = TestServer(app)
    await srv.start_server()
    srv.hits = hits
    yield srv
    await srv.close()


@pytest_asyncio.fixture
async def recorder():
    return Recorder()


@pytest_asyncio.fixture
async def fetch(recorder):
    client = ResilientFetch(sleep=recorder)
    yield client
    await client.close()


class TestBackoffPolicy:

    def test_delays_double_and_cap(self):
        assert [backoff_delay_ms(a) for a in range(6)] == [1000, 2000, 4000, 8000, 8000, 8000]

    @pytest.mark.parametrize("status, retryable", [
        (200, False), (400, False), (404, False), (429, True), (500, True), (503, True),
    ])
    def test_retryable_statuses(self, status, retryable):
        assert is_retryable_status(status) is retryable


@pytest.mark.asyncio
class TestResilientFetch:

    async def test_429_three_times_then_success(self, server, fetch, recorder):
        resp = await fetch.fetch(str(server.make_url("/flaky")))

        assert resp.status == 200
        assert resp.json() == {"ok": True}
        assert resp.attempts == 4
        assert recorder.delays == [1.0, 2.0, 4.0]
        assert sum(recorder.delays) >= 7

    async def test_404_is_not_retried(self, server, fetch, recorder):
        resp = await fetch.fetch(str(server.make_url("/missing")))

        assert resp.status == 404
        assert resp.ok is False
        assert server.hits["missing"] == 1
        assert recorder.delays == []

    async def test_persistent_5xx_returns_last_response(self, server, fetch, recorder):
        resp = await fetch.fetch(str(server.make_url("/broken")))

        assert resp.status == 503
        assert server.hits["broken"] == 4
        assert recorder.delays == [1.0, 2.0, 4.0]

    async def test_fetch_once_does_not_retry(self, server, fetch, recorder):
        resp = await fetch.fetch_once(str(server.make_url("/broken")))

        assert resp.status == 503
        assert server.hits["broken"] == 1
        assert recorder.delays == []

    async def test_timeout_raises_after_retries(self, server, fetch, recorder):
        with pytest.raises(FetchTimeoutError) as exc_info:
            await fetch.fetch(str(server.make_url("/slow")), timeout_ms=50, max_retries=1)

        assert exc_info.value.error_code == "TIMEOUT_ERROR"
        assert recorder.delays == [1.0]

    async def test_connection_error_raises_network_error(self, fetch, recorder):
        with pytest.raises(NetworkError):
            await fetch.fetch("http://127.0.0.1:1/unreachable", max_retries=1, timeout_ms=2000)
        assert recorder.delays == [1.0]

    async def test_default_headers_and_json_body(self, server, recorder):
        async with ResilientFetch(default_headers={"Authorization": "Bearer k"}, sleep=recorder) as client:
            resp = await client.fetch(str(server.make_url("/echo")), method="POST", json={"txhex": "00"})

        assert resp.json() == {"body": {"txhex": "00"}, "auth": "Bearer k"}
