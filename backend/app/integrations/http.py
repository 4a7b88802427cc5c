from __future__ import annotations

import logging
import time
from typing import Callable

import requests

from app.integrations.common import GatewayError, GatewayFailure

logger = logging.getLogger(__name__)


class JsonHttpClient:
    """requests wrapper shared by the gateway adapters.

    Retries network errors, timeouts and 5xx answers up to `retries` extra
    times with a fixed delay. 4xx answers and `status: false` bodies are
    returned to the caller as GatewayError without a retry.
    """

    def __init__(
        self,
        *,
        provider: str,
        base_url: str,
        headers: dict | None = None,
        timeout: float = 30.0,
        retries: int = 2,
        retry_delay: float = 1.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.retries = max(0, int(retries))
        self.retry_delay = max(0.0, float(retry_delay))
        self.session = session or requests.Session()
        self._sleep = sleep

    def request(self, method: str, path: str, *, json: dict | None = None, params: dict | None = None, check_status_flag: bool = False) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        last_error: GatewayError | None = None
        for attempt in range(self.retries + 1):
            if attempt:
                self._sleep(self.retry_delay)
            try:
                return self._once(method, url, json=json, params=params, check_status_flag=check_status_flag)
            except GatewayError as e:
                last_error = e
                if not e.failure.retryable:
                    raise
                logger.warning(
                    "gateway_request_retry provider=%s path=%s attempt=%s failure=%s",
                    self.provider,
                    path,
                    attempt + 1,
                    e.failure.value,
                )
        raise last_error

    def _once(self, method: str, url: str, *, json: dict | None, params: dict | None, check_status_flag: bool) -> dict:
        try:
            r = self.session.request(method, url, headers=self.headers, json=json, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise GatewayError(GatewayFailure.TIMEOUT, f"{self.provider} request timed out", provider=self.provider) from e
        except requests.RequestException as e:
            raise GatewayError(GatewayFailure.NETWORK, f"{self.provider} unreachable: {e}", provider=self.provider) from e

        try:
            body = r.json() if r.content else {}
        except ValueError:
            body = {"raw": r.text[:500]}
        if not isinstance(body, dict):
            body = {"data": body}

        message = str(body.get("message") or f"HTTP {r.status_code}").strip()
        if r.status_code >= 500:
            raise GatewayError(GatewayFailure.SERVER_ERROR, message, provider=self.provider, status_code=r.status_code, raw=body)
        if r.status_code >= 400:
            raise GatewayError(GatewayFailure.CLIENT_ERROR, message, provider=self.provider, status_code=r.status_code, raw=body)
        if check_status_flag and body.get("status") is not True:
            raise GatewayError(GatewayFailure.API_ERROR, message, provider=self.provider, status_code=r.status_code, raw=body)
        return body
