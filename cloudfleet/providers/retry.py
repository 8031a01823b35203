from typing import Optional

from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
    stop_when_event_set,
    wait_exponential,
)
from tenacity.nap import sleep as default_sleep

from cloudfleet.logging_config import get_logger
from cloudfleet.services.exceptions import ProviderError
from cloudfleet.utils.context import CallContext

logger = get_logger(__name__)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _log_retry(retry_state):
    logger.warning(
        "provider_call_retry",
        operation=getattr(retry_state.fn, "__name__", "call"),
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


def call_with_retry(fn, *args, attempts: int = 5, backoff_base: float = 1.0,
                    backoff_max: float = 30.0, ctx: Optional[CallContext] = None, **kwargs):
    """
    retryable=True인 ProviderError만 지수 백오프로 재시도합니다.

    재시도 예산을 모두 쓰면 마지막 예외를 그대로 다시 발생시킵니다.
    ctx가 주어지면 기한이 지나거나 취소된 뒤에는 더 이상 재시도하지 않습니다.
    """
    stop = stop_after_attempt(attempts)
    sleep = default_sleep
    if ctx is not None:
        stop = stop_any(stop, stop_when_event_set(ctx.cancel_event), lambda _state: ctx.expired())
        sleep = ctx.sleep

    retryer = Retrying(
        retry=retry_if_exception(is_retryable),
        stop=stop,
        wait=wait_exponential(multiplier=backoff_base, max=backoff_max),
        sleep=sleep,
        before_sleep=_log_retry,
        reraise=True,
    )
    return retryer(fn, *args, **kwargs)
