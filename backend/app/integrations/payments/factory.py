from __future__ import annotations

import os

from app.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from app.integrations.payments.base import PaymentsProvider
from app.integrations.payments.mock_provider import MockPaymentsProvider
from app.integrations.payments.paystack_provider import PaystackPaymentsProvider


def build_payments_provider(settings) -> PaymentsProvider:
    mode = (getattr(settings, "integrations_mode", "disabled") or "disabled").strip().lower()
    provider = (getattr(settings, "payments_provider", "mock") or "mock").strip().lower()

    if mode == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if provider == "mock":
        return MockPaymentsProvider()

    if provider != "paystack":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (os.getenv("PAYSTACK_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing PAYSTACK_SECRET_KEY")

    return PaystackPaymentsProvider(
        secret_key=secret_key,
        timeout=float(getattr(settings, "http_timeout_seconds", 30.0)),
        retries=int(getattr(settings, "retry_attempts", 2)),
        retry_delay=float(getattr(settings, "retry_delay_seconds", 1.0)),
    )


def payment_health(settings) -> dict:
    mode = (getattr(settings, "integrations_mode", "disabled") or "disabled").strip().lower()
    provider = (getattr(settings, "payments_provider", "mock") or "mock").strip().lower()
    missing = []
    if mode != "disabled" and provider == "paystack" and not (os.getenv("PAYSTACK_SECRET_KEY") or "").strip():
        missing.append("PAYSTACK_SECRET_KEY")
    if mode == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "mode": mode, "provider": provider, "missing": missing}
