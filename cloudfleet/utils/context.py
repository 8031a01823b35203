import threading
import time
from typing import Optional

from cloudfleet.services.exceptions import ProviderTimeoutError


class CallContext:
    """
    프로바이더/SSH 호출에 전달되는 기한(deadline)과 취소 신호.

    전역 타임아웃 대신 호출자가 만든 컨텍스트를 호출마다 넘깁니다.
    child()로 만든 하위 컨텍스트는 부모의 기한을 넘지 않고 취소 신호를 공유합니다.
    """

    def __init__(self, timeout: Optional[float] = None, cancel_event: Optional[threading.Event] = None,
                 _deadline: Optional[float] = None):
        if _deadline is None and timeout is not None:
            _deadline = time.monotonic() + timeout
        self.deadline = _deadline
        self.cancel_event = cancel_event or threading.Event()

    def remaining(self) -> Optional[float]:
        """남은 시간(초). 기한이 없으면 None."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def check(self, operation: str = "call") -> None:
        """
        기한이 지났으면 ProviderTimeoutError를 발생시킵니다.
        기한 초과는 재시도 가능한 일시적 오류로 취급됩니다.
        """
        if self.expired():
            raise ProviderTimeoutError(f"{operation} exceeded its deadline")

    def timeout_for(self, default: float) -> float:
        """네트워크 라이브러리에 넘길 타임아웃. 남은 시간과 default 중 작은 값."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(0.001, min(default, remaining))

    def child(self, timeout: Optional[float] = None) -> "CallContext":
        deadline = self.deadline
        if timeout is not None:
            candidate = time.monotonic() + timeout
            deadline = candidate if deadline is None else min(deadline, candidate)
        return CallContext(cancel_event=self.cancel_event, _deadline=deadline)

    def sleep(self, seconds: float) -> None:
        """기한을 넘기지 않는 범위에서 대기합니다. 취소되면 즉시 깨어납니다."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self.cancel_event.wait(seconds)
