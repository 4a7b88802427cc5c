from __future__ import annotations

import logging
import time
from typing import Callable

import requests

from app.integrations.common import GatewayError, GatewayFailure
from app.integrations.http import JsonHttpClient
from app.services.errors import ErrorKind, WorkflowError

logger = logging.getLogger(__name__)

FUNCTIONS_PREFIX = "/functions/v1"


class RebookedClient:
    """HTTP client for the /functions/v1 surface.

    Fixed delay between attempts with a bounded retry count. Server errors
    come back as WorkflowError whose kind is read from the response `error`
    code.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        retries: int = 2,
        retry_delay: float = 1.0,
        probe_timeout: float = 5.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self.probe_timeout = probe_timeout
        self.http = JsonHttpClient(
            provider="rebooked",
            base_url=self.base_url + FUNCTIONS_PREFIX,
            headers=headers,
            timeout=timeout,
            retries=retries,
            retry_delay=retry_delay,
            session=session,
            sleep=sleep,
        )

    def call(self, function: str, payload: dict) -> dict:
        try:
            body = self.http.request("POST", f"/{function}", json=payload)
        except GatewayError as e:
            raise self._to_workflow_error(function, e) from e
        if body.get("success") is False:
            raise WorkflowError(ErrorKind.from_code(body.get("error")), str(body.get("message") or body.get("error") or ""))
        return body

    def health(self) -> bool:
        try:
            r = self.http.session.get(
                f"{self.http.base_url}/health-test",
                headers=self.http.headers,
                timeout=self.probe_timeout,
            )
        except requests.RequestException as e:
            logger.info("primary_probe_unreachable url=%s err=%s", self.base_url, e)
            return False
        return 200 <= r.status_code < 300

    @staticmethod
    def _to_workflow_error(function: str, e: GatewayError) -> WorkflowError:
        if e.failure in (GatewayFailure.NETWORK, GatewayFailure.TIMEOUT):
            return WorkflowError(ErrorKind.NETWORK_ERROR, f"{function} unreachable: {e.message}", details=e.to_dict())
        raw = e.raw or {}
        kind = ErrorKind.from_code(raw.get("error"), default=ErrorKind.GATEWAY_ERROR)
        return WorkflowError(kind, str(raw.get("message") or e.message), details={"status_code": e.status_code, "function": function})
