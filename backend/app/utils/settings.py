from __future__ import annotations

import os
from dataclasses import dataclass

from flask import current_app, has_app_context


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


@dataclass(frozen=True)
class WorkflowSettings:
    integrations_mode: str = "disabled"  # disabled | mock | live
    payments_provider: str = "mock"  # mock | paystack
    courier_provider: str = "mock"  # mock | courier_guy

    commit_window_hours: int = 48
    standard_payment_days: int = 7
    locker_payment_acceleration_days: int = 3
    escrow_release_hold_hours: int = 48
    platform_commission_bps: int = 1000

    retry_attempts: int = 2
    retry_delay_seconds: float = 1.0
    http_timeout_seconds: float = 30.0

    @property
    def integrations_enabled(self) -> bool:
        return self.integrations_mode in ("mock", "live")

    @property
    def locker_payment_days(self) -> int:
        return max(0, self.standard_payment_days - self.locker_payment_acceleration_days)

    def to_dict(self) -> dict:
        return {
            "integrations_mode": self.integrations_mode,
            "payments_provider": self.payments_provider,
            "courier_provider": self.courier_provider,
            "commit_window_hours": self.commit_window_hours,
            "standard_payment_days": self.standard_payment_days,
            "locker_payment_acceleration_days": self.locker_payment_acceleration_days,
            "escrow_release_hold_hours": self.escrow_release_hold_hours,
            "platform_commission_bps": self.platform_commission_bps,
        }


def get_settings() -> WorkflowSettings:
    """Env defaults, overridden by app.config keys of the same name in upper case."""
    values = {
        "integrations_mode": (os.getenv("INTEGRATIONS_MODE") or "disabled").strip().lower(),
        "payments_provider": (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower(),
        "courier_provider": (os.getenv("COURIER_PROVIDER") or "mock").strip().lower(),
        "commit_window_hours": _env_int("COMMIT_WINDOW_HOURS", 48),
        "standard_payment_days": _env_int("STANDARD_PAYMENT_DAYS", 7),
        "locker_payment_acceleration_days": _env_int("LOCKER_PAYMENT_ACCELERATION_DAYS", 3),
        "escrow_release_hold_hours": _env_int("ESCROW_RELEASE_HOLD_HOURS", 48),
        "platform_commission_bps": _env_int("PLATFORM_COMMISSION_BPS", 1000),
        "retry_attempts": _env_int("RETRY_ATTEMPTS", 2),
        "retry_delay_seconds": _env_float("RETRY_DELAY_SECONDS", 1.0),
        "http_timeout_seconds": _env_float("HTTP_TIMEOUT_SECONDS", 30.0),
    }
    if has_app_context():
        for key in list(values.keys()):
            override = current_app.config.get(key.upper())
            if override is not None:
                values[key] = override
    return WorkflowSettings(**values)
