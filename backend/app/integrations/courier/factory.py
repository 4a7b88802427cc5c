from __future__ import annotations

import os

from app.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from app.integrations.courier.base import CourierClient
from app.integrations.courier.http_provider import HttpCourierClient
from app.integrations.courier.mock_provider import MockCourierClient


def build_courier_client(settings) -> CourierClient:
    mode = (getattr(settings, "integrations_mode", "disabled") or "disabled").strip().lower()
    provider = (getattr(settings, "courier_provider", "mock") or "mock").strip().lower()

    if mode == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:courier")

    if provider == "mock":
        return MockCourierClient()

    if provider != "courier_guy":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:courier_provider={provider}")

    api_key = (os.getenv("COURIER_API_KEY") or "").strip()
    base_url = (os.getenv("COURIER_BASE_URL") or "").strip()
    if not api_key or not base_url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing COURIER_API_KEY/COURIER_BASE_URL")

    return HttpCourierClient(
        api_key=api_key,
        base_url=base_url,
        timeout=float(getattr(settings, "http_timeout_seconds", 30.0)),
        retries=int(getattr(settings, "retry_attempts", 2)),
        retry_delay=float(getattr(settings, "retry_delay_seconds", 1.0)),
    )
