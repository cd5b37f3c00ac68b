"""
Intercom Client Rate Limit (429) Handling Tests

Covers Retry-After support on the request path and the client-side token
bucket that paces every request.
Run with: pytest tests/test_intercom_rate_limit.py -v
"""

import logging
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import AsyncMock, patch

import pytest

from intercom_mirror.config import MirrorConfig
from intercom_mirror.intercom_client import FetchError, IntercomClient
from intercom_mirror.rate_limiter import (
    NoopRateLimiter,
    TokenBucketRateLimiter,
    build_rate_limiter,
)
from tests.fakes import make_mock_response


class TestRateLimitRetryable:
    """Tests verifying 429 is in RETRYABLE_STATUS_CODES."""

    def test_429_in_retryable_status_codes(self):
        assert 429 in IntercomClient.RETRYABLE_STATUS_CODES


class TestRetryAfterParsing:
    """Tests for Retry-After header parsing."""

    @pytest.fixture
    def client(self):
        """Create client with mocked token."""
        with patch.dict("os.environ", {"INTERCOM_ACCESS_TOKEN": "test_token"}):
            return IntercomClient(max_retries=3)

    def test_retry_after_seconds_format(self, client):
        """Test parsing Retry-After header with seconds value."""
        mock_429 = make_mock_response(429, headers={"Retry-After": "30"})
        mock_success = make_mock_response(200, json_data={"data": "success"})

        sleep_calls = []

        def track_sleep(delay):
            sleep_calls.append(delay)

        with patch.object(client.session, "get", side_effect=[mock_429, mock_success]):
            with patch("intercom_mirror.intercom_client.time.sleep", side_effect=track_sleep):
                result = client._get("/test")

        assert result == {"data": "success"}
        # Should use Retry-After value (30) + some jitter
        assert len(sleep_calls) == 1
        assert sleep_calls[0] >= 30
        assert sleep_calls[0] <= 30 * 1.5 + 1

    def test_retry_after_http_date_format(self, client):
        """Test parsing Retry-After header with HTTP-date value."""
        future_time = datetime.now(timezone.utc) + timedelta(seconds=45)
        http_date = format_datetime(future_time, usegmt=True)

        mock_429 = make_mock_response(429, headers={"Retry-After": http_date})
        mock_success = make_mock_response(200, json_data={"data": "success"})

        sleep_calls = []

        def track_sleep(delay):
            sleep_calls.append(delay)

        with patch.object(client.session, "get", side_effect=[mock_429, mock_success]):
            with patch("intercom_mirror.intercom_client.time.sleep", side_effect=track_sleep):
                result = client._get("/test")

        assert result == {"data": "success"}
        assert len(sleep_calls) == 1
        # Should compute delta from HTTP-date (approximately 45s + jitter)
        assert sleep_calls[0] >= 40
        assert sleep_calls[0] <= 70

    def test_retry_after_missing_uses_exponential_backoff(self, client):
        """Test that missing Retry-After header falls back to exponential backoff."""
        mock_429 = make_mock_response(429, headers={})
        mock_success = make_mock_response(200, json_data={"data": "success"})

        sleep_calls = []

        def track_sleep(delay):
            sleep_calls.append(delay)

        with patch.object(client.session, "get", side_effect=[mock_429, mock_success]):
            with patch("intercom_mirror.intercom_client.time.sleep", side_effect=track_sleep):
                client._get("/test")

        assert len(sleep_calls) == 1
        # First retry: base_delay * 2^0 + jitter = 2s + jitter
        assert 2 <= sleep_calls[0] <= 3

    def test_retry_after_garbage_uses_default_window(self):
        assert IntercomClient._parse_retry_after("soon-ish") == 10

    def test_retry_after_minimum_one_second(self):
        assert IntercomClient._parse_retry_after("0") == 1


class TestRateLimitRecovery:
    """Tests for successful recovery from rate limiting."""

    @pytest.fixture
    def client(self):
        with patch.dict("os.environ", {"INTERCOM_ACCESS_TOKEN": "test_token"}):
            return IntercomClient(max_retries=3)

    def test_recovers_after_rate_limit(self, client):
        """Test that we recover after 429 and continue processing."""
        mock_429 = make_mock_response(429, headers={"Retry-After": "1"})
        mock_success = make_mock_response(200, json_data={"conversations": [{"id": "123"}]})

        with patch.object(client.session, "get", side_effect=[mock_429, mock_success]):
            with patch("intercom_mirror.intercom_client.time.sleep"):
                result = client._get("/conversations")

        assert result == {"conversations": [{"id": "123"}]}

    def test_exhausts_retries_on_persistent_rate_limit(self, client):
        """Test that we raise after max retries if rate limit persists."""
        mock_429 = make_mock_response(429, headers={"Retry-After": "1"})

        with patch.object(client.session, "get", return_value=mock_429):
            with patch("intercom_mirror.intercom_client.time.sleep"):
                with pytest.raises(FetchError) as exc_info:
                    client._get("/test")

        assert exc_info.value.status_code == 429

    def test_logs_rate_limit_warning(self, client, caplog):
        """Test that rate limit events are logged with details."""
        mock_429 = make_mock_response(429, headers={"Retry-After": "5", "X-RateLimit-Remaining": "0"})
        mock_success = make_mock_response(200, json_data={"data": "ok"})

        with caplog.at_level(logging.WARNING):
            with patch.object(client.session, "get", side_effect=[mock_429, mock_success]):
                with patch("intercom_mirror.intercom_client.time.sleep"):
                    client._get("/test")

        assert any("429" in record.message for record in caplog.records)
        assert any("Rate limit low" in record.message for record in caplog.records)


class TestRateLimitTelemetry:
    """Tests for X-RateLimit-Remaining observability."""

    @pytest.fixture
    def client(self):
        with patch.dict("os.environ", {"INTERCOM_ACCESS_TOKEN": "test_token"}):
            return IntercomClient(max_retries=3)

    def test_warns_when_remaining_low(self, client, caplog):
        """Warn when X-RateLimit-Remaining drops below the threshold."""
        mock_response = make_mock_response(200, json_data={"data": "ok"}, headers={"X-RateLimit-Remaining": "50"})

        with caplog.at_level(logging.WARNING):
            with patch.object(client.session, "get", return_value=mock_response):
                client._get("/test")

        assert any("50 requests remaining" in record.message for record in caplog.records)

    def test_no_warning_when_remaining_high(self, client, caplog):
        mock_response = make_mock_response(200, json_data={"data": "ok"}, headers={"X-RateLimit-Remaining": "900"})

        with caplog.at_level(logging.WARNING):
            with patch.object(client.session, "get", return_value=mock_response):
                client._get("/test")

        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]

    def test_invalid_remaining_header_ignored(self, client):
        mock_response = make_mock_response(200, json_data={"data": "ok"}, headers={"X-RateLimit-Remaining": "lots"})

        with patch.object(client.session, "get", return_value=mock_response):
            assert client._get("/test") == {"data": "ok"}


class TestTokenBucket:
    """Tests for the client-side token bucket."""

    @pytest.mark.asyncio
    async def test_burst_passes_without_waiting(self):
        with patch("intercom_mirror.rate_limiter.time.monotonic", return_value=100.0):
            limiter = TokenBucketRateLimiter(rate_per_second=3)
            with patch("intercom_mirror.rate_limiter.asyncio.sleep", new=AsyncMock()) as mock_sleep:
                for _ in range(3):
                    await limiter.acquire()

        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_waits_when_bucket_empty(self):
        with patch("intercom_mirror.rate_limiter.time.monotonic", return_value=100.0):
            limiter = TokenBucketRateLimiter(rate_per_second=2, burst=2)
            with patch("intercom_mirror.rate_limiter.asyncio.sleep", new=AsyncMock()) as mock_sleep:
                await limiter.acquire()
                await limiter.acquire()
                await limiter.acquire()

        mock_sleep.assert_awaited_once()
        assert mock_sleep.await_args[0][0] == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_refills_over_time(self):
        clock = [100.0]
        with patch("intercom_mirror.rate_limiter.time.monotonic", side_effect=lambda: clock[0]):
            limiter = TokenBucketRateLimiter(rate_per_second=1, burst=1)
            with patch("intercom_mirror.rate_limiter.asyncio.sleep", new=AsyncMock()) as mock_sleep:
                await limiter.acquire()
                clock[0] += 1.0
                await limiter.acquire()

        mock_sleep.assert_not_awaited()

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(rate_per_second=0)

    def test_build_rate_limiter(self):
        assert isinstance(build_rate_limiter(0), NoopRateLimiter)
        assert isinstance(build_rate_limiter(5), TokenBucketRateLimiter)

    def test_client_from_config_uses_max_rps(self):
        config = MirrorConfig(access_token="tok", max_rps=4)

        client = IntercomClient.from_config(config)

        assert isinstance(client.rate_limiter, TokenBucketRateLimiter)
        assert client.rate_limiter.rate_per_second == 4
