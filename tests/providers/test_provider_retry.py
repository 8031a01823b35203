# tests/providers/test_provider_retry.py
import pytest
from unittest.mock import MagicMock

from cloudfleet.providers.retry import call_with_retry, is_retryable
from cloudfleet.services.exceptions import (
    ProviderAuthError, ProviderError, ProviderNotFoundError, ProviderTimeoutError
)
from cloudfleet.utils.context import CallContext


def flaky(failures, exc_factory, result="ok"):
    """처음 failures번은 예외를 던지고 그 다음부터 result를 반환하는 모의 함수."""
    fn = MagicMock(__name__="flaky")
    fn.side_effect = [exc_factory() for _ in range(failures)] + [result]
    return fn


class TestCallWithRetry:
    def test_transient_errors_are_retried(self):
        fn = flaky(2, lambda: ProviderError("503", retryable=True))

        assert call_with_retry(fn, "arg", attempts=3, backoff_base=0) == "ok"
        assert fn.call_count == 3
        fn.assert_called_with("arg")

    def test_exhausted_retries_reraise_last_error(self):
        fn = flaky(5, lambda: ProviderTimeoutError("slow"))

        with pytest.raises(ProviderTimeoutError):
            call_with_retry(fn, attempts=3, backoff_base=0)
        assert fn.call_count == 3

    @pytest.mark.parametrize("exc", [
        ProviderAuthError("bad token"),
        ProviderNotFoundError("gone"),
        ProviderError("422", retryable=False),
        ValueError("bug"),
    ])
    def test_permanent_errors_are_not_retried(self, exc):
        fn = MagicMock(__name__="op", side_effect=exc)

        with pytest.raises(type(exc)):
            call_with_retry(fn, attempts=5, backoff_base=0)
        assert fn.call_count == 1

    def test_cancelled_context_stops_retrying(self):
        ctx = CallContext()
        ctx.cancel()
        fn = flaky(5, lambda: ProviderError("503", retryable=True))

        with pytest.raises(ProviderError):
            call_with_retry(fn, attempts=5, backoff_base=0, ctx=ctx)
        assert fn.call_count == 1

    def test_is_retryable(self):
        assert is_retryable(ProviderTimeoutError("t"))
        assert not is_retryable(ProviderAuthError("a"))
        assert not is_retryable(OSError("o"))
