from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass
class IntegrationResult:
    ok: bool
    code: str = ""
    message: str = ""
    raw: dict | None = None


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


class GatewayFailure(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    API_ERROR = "api_error"
    NOT_CONFIGURED = "not_configured"

    @property
    def retryable(self) -> bool:
        return self in (GatewayFailure.NETWORK, GatewayFailure.TIMEOUT, GatewayFailure.SERVER_ERROR)


class GatewayError(RuntimeError):
    """Raised by payment and courier adapters; `failure` is set where the error happens."""

    def __init__(self, failure: GatewayFailure, message: str, *, provider: str = "", status_code: int | None = None, raw: dict | None = None):
        super().__init__(message)
        self.failure = failure
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.raw = raw

    def to_dict(self) -> dict:
        return {
            "failure": self.failure.value,
            "provider": self.provider,
            "status_code": self.status_code,
            "message": self.message,
        }
