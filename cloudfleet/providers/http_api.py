from typing import Any, Dict, Optional

import httpx

from cloudfleet.logging_config import get_logger
from cloudfleet.services.exceptions import (
    ProviderAuthError,
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
)
from cloudfleet.utils.context import CallContext

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class HttpApi:
    """
    HTTP 기반 프로바이더 API 공통 클라이언트.

    httpx 예외와 응답 코드를 ProviderError 계층으로 변환합니다.
        - 타임아웃: ProviderTimeoutError (재시도)
        - 연결 오류, 429, 5xx: ProviderError(retryable=True)
        - 401/403: ProviderAuthError
        - 404: ProviderNotFoundError
        - 기타 4xx: ProviderError(retryable=False)
    """

    def __init__(self, base_url: str, token: str, provider_name: str,
                 default_timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self.provider_name = provider_name
        self.default_timeout = default_timeout
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            transport=transport,
        )

    def request(self, ctx: CallContext, method: str, path: str,
                json: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, Any]] = None) -> Any:
        ctx.check(f"{self.provider_name} {method} {path}")
        try:
            resp = self.client.request(method, path, json=json, params=params,
                                       timeout=ctx.timeout_for(self.default_timeout))
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{self.provider_name} {method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderError(f"{self.provider_name} {method} {path} failed: {e}", retryable=True) from e

        if resp.is_success:
            if not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError as e:
                raise ProviderError(f"{self.provider_name} returned invalid JSON for {path}", retryable=True) from e

        message = f"{self.provider_name} {method} {path} returned {resp.status_code}: {resp.text[:200]}"
        logger.warning("provider_http_error", provider=self.provider_name, method=method,
                       path=path, status_code=resp.status_code)
        if resp.status_code in (401, 403):
            raise ProviderAuthError(message)
        if resp.status_code == 404:
            raise ProviderNotFoundError(message)
        raise ProviderError(message, retryable=resp.status_code in RETRYABLE_STATUS_CODES)

    def close(self) -> None:
        self.client.close()
