# chaoscanvas/errors.py
"""
Error taxonomy shared by the ledger store, the engines and the HTTP layer.

Every failure carries a short machine-readable ``kind`` plus a human message.
The HTTP layer renders them as ``{"error": kind, "message": message}`` using
``status_code``; nothing here knows about FastAPI.
"""
from __future__ import annotations

from typing import Any, Dict


class ChaosError(RuntimeError):
    kind: str = "error"
    status_code: int = 500

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details: Dict[str, Any] = dict(details)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(ChaosError):
    """Malformed or missing input; raised before any mutation."""

    kind = "validation_error"
    status_code = 400


class NotFound(ChaosError):
    kind = "not_found"
    status_code = 404


class InsufficientFunds(ChaosError):
    """Balance check failed; no mutation occurred."""

    kind = "insufficient_funds"
    status_code = 400


class RateLimited(ChaosError):
    kind = "rate_limited"
    status_code = 429


class DailyLimitExceeded(ChaosError):
    kind = "daily_limit_exceeded"
    status_code = 429


class InvalidState(ChaosError):
    """A write would break a ledger invariant (e.g. a negative balance)."""

    kind = "invalid_state"
    status_code = 409


class UpstreamUnavailable(ChaosError):
    kind = "upstream_unavailable"
    status_code = 502


class NotConfigured(UpstreamUnavailable):
    """The collaborator is switched off in this deployment."""

    status_code = 503


class Fatal(ChaosError):
    """Storage I/O failure; the enclosing operation was aborted."""

    kind = "fatal"
    status_code = 500


__all__ = [
    "ChaosError",
    "ValidationError",
    "NotFound",
    "InsufficientFunds",
    "RateLimited",
    "DailyLimitExceeded",
    "InvalidState",
    "UpstreamUnavailable",
    "NotConfigured",
    "Fatal",
]
