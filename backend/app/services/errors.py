from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    ALREADY_COMMITTED = "ALREADY_COMMITTED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    UPDATE_FAILED = "UPDATE_FAILED"
    INVALID_STATUS = "INVALID_STATUS"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NETWORK_ERROR = "NETWORK_ERROR"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]

    @classmethod
    def from_code(cls, code: str | None, default: "ErrorKind | None" = None) -> "ErrorKind":
        try:
            return cls((code or "").strip().upper())
        except ValueError:
            return default or cls.GATEWAY_ERROR


_HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_COMMITTED: 409,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.GATEWAY_ERROR: 502,
    ErrorKind.UPDATE_FAILED: 500,
    ErrorKind.INVALID_STATUS: 409,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NETWORK_ERROR: 503,
}


class WorkflowError(Exception):
    """Failure of an order workflow step, tagged with its kind where it is raised."""

    def __init__(self, kind: ErrorKind, message: str = "", *, details: dict | None = None):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value
        self.details = dict(details or {})

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def to_dict(self) -> dict:
        out = {
            "ok": False,
            "success": False,
            "error": self.kind.value,
            "message": self.message,
        }
        if self.details:
            out["details"] = self.details
        return out

    def __repr__(self) -> str:
        return f"WorkflowError({self.kind.value}, {self.message!r})"
