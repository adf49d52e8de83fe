"""Domain exceptions raised by the key pool, quota and relay layers.

Each error carries the HTTP status the API layer reports it with, so the
exception handlers in :mod:`keypool.api.app` stay a thin translation.
"""

from __future__ import annotations

from typing import Any


class KeyPoolError(Exception):
    """Base error for all key pool failures."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "message": self.message,
            "code": self.status_code,
        }
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}


class LimitExceeded(KeyPoolError):
    """Raised when no credential has capacity or a window is saturated."""

    status_code = 429


class InvalidCredential(KeyPoolError):
    """Raised for malformed or duplicate credentials, or unknown ones on removal."""

    status_code = 400


class InvalidRequest(KeyPoolError):
    """Raised when the inbound request body cannot be used."""

    status_code = 400


class UpstreamFailure(KeyPoolError):
    """
    Raised when the provider call fails.

    Attributes:
        body: Upstream response body, passed through to the caller when present
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: Any = None,
        details: Any = None,
    ) -> None:
        self.body = body
        super().__init__(message, status_code=status_code, details=details)

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.body, dict):
            return self.body
        return super().to_dict()


class MalformedStreamFragment(KeyPoolError):
    """A complete SSE line whose payload is not a JSON object. Never surfaced."""


class StoreUnavailable(KeyPoolError):
    """Raised when the counter store cannot be reached."""

    status_code = 503
