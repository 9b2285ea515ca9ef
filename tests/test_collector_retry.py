"""Tests for collector retry logic."""

from unittest.mock import Mock

import httpx
import pytest

from aiobscura.collector.retry import (
    RetryConfig,
    calculate_delay,
    call_with_retry,
    check_response,
)
from aiobscura.exceptions import NetworkError


class TestCalculateDelay:
    def test_exponential_growth(self):
        config = RetryConfig()

        assert [calculate_delay(n, config) for n in range(4)] == [0.5, 1.0, 2.0, 4.0]

    def test_capped_at_max_delay(self):
        assert calculate_delay(10, RetryConfig()) == 30.0

    def test_jitter_adds_at_most_a_quarter(self):
        config = RetryConfig(jitter=True)

        for _ in range(20):
            assert 2.0 <= calculate_delay(2, config) <= 2.5


class TestCheckResponse:
    def test_success_passes(self):
        check_response(httpx.Response(201))

    def test_server_errors_are_retryable(self):
        with pytest.raises(NetworkError) as exc_info:
            check_response(httpx.Response(503, text="busy"))

        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable is True
        assert "HTTP 503: busy" in str(exc_info.value)

    def test_client_errors_are_fatal(self):
        with pytest.raises(NetworkError) as exc_info:
            check_response(httpx.Response(401, text="bad key"))

        assert exc_info.value.retryable is False


class TestCallWithRetry:
    """Tests for the retry loop."""

    def test_returns_first_success(self):
        sleep = Mock()

        assert call_with_retry(lambda: 42, RetryConfig(), sleep=sleep) == 42
        sleep.assert_not_called()

    def test_retries_retryable_failures(self):
        func = Mock(side_effect=[NetworkError("503", retryable=True), "ok"])
        sleep = Mock()

        assert call_with_retry(func, RetryConfig(), sleep=sleep) == "ok"
        sleep.assert_called_once_with(0.5)

    def test_transport_errors_are_retried(self):
        func = Mock(side_effect=[httpx.ConnectError("refused"), "ok"])

        assert call_with_retry(func, RetryConfig(), sleep=Mock()) == "ok"

    def test_fatal_errors_are_not_retried(self):
        func = Mock(side_effect=NetworkError("HTTP 400", status_code=400))
        sleep = Mock()

        with pytest.raises(NetworkError, match="HTTP 400"):
            call_with_retry(func, RetryConfig(), sleep=sleep)

        assert func.call_count == 1
        sleep.assert_not_called()

    def test_gives_up_after_max_retries(self):
        func = Mock(side_effect=NetworkError("HTTP 502", retryable=True))
        sleep = Mock()

        with pytest.raises(NetworkError, match="HTTP 502"):
            call_with_retry(func, RetryConfig(max_retries=2), sleep=sleep)

        assert func.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]
