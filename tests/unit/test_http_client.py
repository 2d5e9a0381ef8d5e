"""
Unit Tests for the shared RestClient

The aiohttp session is replaced by a MagicMock whose request() returns
async context managers yielding scripted responses.

Run with:
    pytest tests/unit/test_http_client.py -v
"""

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from core.errors import DataValidationError, RateLimitError, TransportError, UpstreamServerError
from core.http_client import RestClient
from core.retry import RetryPolicy
from tests.unit.fakes import RecordingSleep


def response(status=200, payload=None, text="", json_error=None, headers=None):
    resp = MagicMock()
    resp.status = status
    resp.headers = headers or {}
    resp.json = AsyncMock(return_value=payload, side_effect=json_error)
    resp.text = AsyncMock(return_value=text)
    cm = MagicMock()
    cm.__aenter__.return_value = resp
    cm.__aexit__.return_value = False
    return cm


def make_client(*responses, attempts=3):
    sleep = RecordingSleep()
    client = RestClient(
        "okx",
        "https://example.test/",
        retry=RetryPolicy(attempts=attempts, base=0.3, jitter_max=0.0),
        sleep=sleep,
    )
    client.session = MagicMock()
    client.session.request = MagicMock(side_effect=list(responses))
    return client, sleep


class TestRestClient:

    @pytest.mark.asyncio
    async def test_returns_decoded_json(self):
        client, sleep = make_client(response(payload={"code": "0"}))

        assert await client.get_json("/api/v5/x", {"a": 1}) == {"code": "0"}

        args, kwargs = client.session.request.call_args
        assert args == ("GET", "https://example.test/api/v5/x")
        assert kwargs["params"] == {"a": 1}
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self):
        client, _ = make_client(response(payload=[1]))
        assert await client.post_json("/info", {"type": "meta"}) == [1]
        assert client.session.request.call_args.kwargs["json"] == {"type": "meta"}

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        client, sleep = make_client(response(status=429, text="slow"), response(payload={"ok": True}))

        assert await client.get_json("/x") == {"ok": True}
        assert client.session.request.call_count == 2
        assert sleep.delays == [pytest.approx(0.3)]

    @pytest.mark.asyncio
    async def test_rate_limit_waits_for_retry_after(self):
        client, sleep = make_client(
            response(status=429, text="slow", headers={"Retry-After": "5"}),
            response(payload={"ok": True}),
        )

        assert await client.get_json("/x") == {"ok": True}
        assert sleep.delays == [5.0]

    @pytest.mark.asyncio
    async def test_short_retry_after_keeps_backoff(self):
        client, sleep = make_client(
            response(status=418, headers={"Retry-After": "0"}),
            response(payload={}),
        )

        await client.get_json("/x")
        assert sleep.delays == [pytest.approx(0.3)]

    @pytest.mark.asyncio
    async def test_exhausted_rate_limit_keeps_retry_after(self):
        client, _ = make_client(
            response(status=429, headers={"Retry-After": "1"}),
            response(status=429, headers={"Retry-After": "2"}),
            attempts=2,
        )

        with pytest.raises(RateLimitError) as exc_info:
            await client.get_json("/x")

        assert exc_info.value.retry_after == 2.0

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self):
        client, sleep = make_client(response(status=500), response(status=502), response(status=500))

        with pytest.raises(UpstreamServerError):
            await client.get_json("/x")

        assert client.session.request.call_count == 3
        assert sleep.delays == [pytest.approx(0.3), pytest.approx(0.6)]

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        client, sleep = make_client(response(status=400, text="bad symbol"), response(payload={}))

        with pytest.raises(DataValidationError) as exc_info:
            await client.get_json("/x")

        assert exc_info.value.status == 400
        assert client.session.request.call_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_undecodable_body_is_validation_error(self):
        client, _ = make_client(response(json_error=ValueError("not json")))

        with pytest.raises(DataValidationError):
            await client.get_json("/x")

    @pytest.mark.asyncio
    async def test_transport_failures_are_classified(self):
        def failing():
            cm = MagicMock()
            cm.__aenter__.side_effect = aiohttp.ServerDisconnectedError()
            return cm

        client, _ = make_client(failing(), failing(), attempts=2)

        with pytest.raises(TransportError) as exc_info:
            await client.get_json("/x")

        assert exc_info.value.category == "connection_reset"

    @pytest.mark.asyncio
    async def test_requires_open_session(self):
        client = RestClient("okx", "https://example.test")
        with pytest.raises(RuntimeError):
            await client.get_json("/x")
