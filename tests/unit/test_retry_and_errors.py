"""
Unit Tests for Backoff Policies, Batched Fan-out and Error Classification

Run with:
    pytest tests/unit/test_retry_and_errors.py -v
"""

import asyncio
import socket

import aiohttp
import pytest

from core.batching import chunked, gather_in_batches
from core.errors import (
    DataValidationError,
    RateLimitError,
    UpstreamServerError,
    classify_http_status,
    classify_transport_error,
    close_code_category,
    parse_retry_after,
)
from core.retry import ReconnectPolicy, RetryPolicy
from tests.unit.fakes import RecordingSleep


class TestReconnectPolicy:

    @pytest.mark.parametrize("attempt", [1, 2, 3, 4, 5])
    def test_delay_within_bounds(self, attempt):
        low = ReconnectPolicy(base=1.0, max_delay=1000, jitter_max=0.5, rng=lambda: 0.0)
        high = ReconnectPolicy(base=1.0, max_delay=1000, jitter_max=0.5, rng=lambda: 0.999999)

        floor = 1.0 * 2 ** (attempt - 1)
        assert low.delay(attempt) == floor
        assert floor <= high.delay(attempt) <= floor + 0.5

    def test_delay_is_capped(self):
        policy = ReconnectPolicy(base=1.0, max_delay=10.0, jitter_max=0.0)
        assert policy.delay(10) == 10.0

    def test_category_multipliers(self):
        policy = ReconnectPolicy(base=1.0, max_delay=100, jitter_max=0.0)
        assert policy.delay(2, "dns_error") == 4.0
        assert policy.delay(2, "connection_refused") == 4.0
        assert policy.delay(2, "server_error") == 3.0
        assert policy.delay(2, "abnormal_closure") == 2.0

    def test_should_retry_until_max_attempts(self):
        policy = ReconnectPolicy(max_attempts=3)
        assert [policy.should_retry(n) for n in (1, 3, 4)] == [True, True, False]

    def test_rejects_non_positive_base(self):
        with pytest.raises(ValueError):
            ReconnectPolicy(base=0)


class TestRetryPolicy:

    def test_exponential_delays(self):
        policy = RetryPolicy(base=0.3, jitter_max=0.1, rng=lambda: 0.0)
        assert [policy.delay(n) for n in (0, 1, 2)] == pytest.approx([0.3, 0.6, 1.2])

    def test_at_least_one_attempt(self):
        assert RetryPolicy(attempts=0).attempts == 1


class TestBatching:

    def test_chunked(self):
        assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    @pytest.mark.asyncio
    async def test_gather_in_batches_keeps_order_and_exceptions(self):
        sleep = RecordingSleep()

        async def work(n):
            if n == 3:
                raise ValueError("bad")
            await asyncio.sleep(0)
            return n * 10

        results = await gather_in_batches([1, 2, 3, 4, 5], work, batch_size=2, pause=0.2, sleep=sleep)

        assert results[:2] == [10, 20]
        assert isinstance(results[2], ValueError)
        assert results[3:] == [40, 50]
        assert sleep.delays == [0.2, 0.2]


class TestErrorClassification:

    @pytest.mark.parametrize("status,expected", [
        (429, RateLimitError),
        (418, RateLimitError),
        (503, RateLimitError),
        (500, UpstreamServerError),
        (502, UpstreamServerError),
        (400, DataValidationError),
        (404, DataValidationError),
    ])
    def test_http_status(self, status, expected):
        assert isinstance(classify_http_status(status, "x"), expected)

    def test_validation_errors_are_not_retryable(self):
        error = classify_http_status(400)
        assert error.retryable is False
        assert error.status == 400
        assert classify_http_status(500).retryable is True

    def test_rate_limit_carries_retry_after(self):
        assert classify_http_status(429, "x", retry_after=2.0).retry_after == 2.0
        assert classify_http_status(429, "x").retry_after is None

    @pytest.mark.parametrize("value,expected", [
        ("2", 2.0),
        (" 1.5 ", 1.5),
        (3, 3.0),
        ("0", 0.0),
        ("-1", None),
        ("nan", None),
        ("Wed, 21 Oct 2026 07:28:00 GMT", None),
        (None, None),
    ])
    def test_parse_retry_after(self, value, expected):
        assert parse_retry_after(value) == expected

    @pytest.mark.parametrize("code,expected", [
        (1000, "normal"),
        (1006, "abnormal_closure"),
        (1011, "server_error"),
        (4000, "unknown"),
        (None, "abnormal_closure"),
    ])
    def test_close_codes(self, code, expected):
        assert close_code_category(code) == expected

    def test_transport_errors(self):
        assert classify_transport_error(asyncio.TimeoutError()) == "timeout"
        assert classify_transport_error(socket.gaierror()) == "dns_error"
        assert classify_transport_error(ConnectionRefusedError()) == "connection_refused"
        assert classify_transport_error(ConnectionResetError()) == "connection_reset"
        assert classify_transport_error(aiohttp.ServerDisconnectedError()) == "connection_reset"
        assert classify_transport_error(RateLimitError("slow down")) == "rate_limit"
        assert classify_transport_error(KeyError("x")) == "unknown"
