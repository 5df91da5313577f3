"""
Tests for retry_sync_with_backoff and its retry classification.
"""
import httpx
import pytest

from citycircle.core.retry import retry_sync_with_backoff, should_retry_error


def _status_error(code):
    request = httpx.Request("GET", "http://collaborator.test/")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


class TestShouldRetry:
    def test_timeouts_and_connection_errors_retry(self):
        request = httpx.Request("GET", "http://collaborator.test/")
        assert should_retry_error(httpx.ReadTimeout("slow", request=request))
        assert should_retry_error(httpx.ConnectError("refused", request=request))

    def test_server_errors_retry(self):
        assert should_retry_error(_status_error(503))

    def test_client_errors_do_not_retry(self):
        assert not should_retry_error(_status_error(404))

    def test_other_exceptions_do_not_retry(self):
        assert not should_retry_error(ValueError("bug"))


class TestRetrySyncWithBackoff:
    def test_returns_first_success(self):
        calls = []

        def flaky(value):
            calls.append(value)
            if len(calls) < 3:
                raise _status_error(502)
            return value * 2

        delays = []
        assert retry_sync_with_backoff(flaky, 21, max_attempts=3, jitter=False, sleep=delays.append) == 42
        assert delays == [0.2, 0.4]

    def test_gives_up_after_max_attempts(self):
        calls = []

        def always_down():
            calls.append(1)
            raise _status_error(503)

        with pytest.raises(httpx.HTTPStatusError):
            retry_sync_with_backoff(always_down, max_attempts=4, sleep=lambda _: None)
        assert len(calls) == 4

    def test_non_retryable_raises_immediately(self):
        calls = []

        def broken():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            retry_sync_with_backoff(broken, max_attempts=5, sleep=lambda _: None)
        assert len(calls) == 1

    def test_delay_is_capped(self):
        delays = []

        def always_down():
            raise _status_error(500)

        with pytest.raises(httpx.HTTPStatusError):
            retry_sync_with_backoff(
                always_down, max_attempts=5, initial_delay=1.0, max_delay=3.0, jitter=False, sleep=delays.append
            )
        assert delays == [1.0, 2.0, 3.0, 3.0]
