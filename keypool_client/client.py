"""
Key Pool API Client
HTTP client for the proxy's status and admin endpoints.
"""

from __future__ import annotations

import os
from typing import Optional

import httpx

from .models import PoolStatus


class KeyPoolClientError(Exception):
    """Raised when the proxy answers with an error body."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"{status_code}: {message}")


class KeyPoolClient:
    """
    Python client for a running key pool proxy.

    Example:
        ```python
        with KeyPoolClient() as client:
            status = client.status()
            print(status.available_keys, "of", status.total_keys, "keys available")
        ```
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Proxy URL (default: KEYPOOL_URL or localhost:3000)
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests)
        """
        self.base_url = (base_url or os.getenv("KEYPOOL_URL", "http://localhost:3000")).rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> KeyPoolClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    @staticmethod
    def _check(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.is_error:
            error = data.get("error", {}) if isinstance(data, dict) else {}
            message = error.get("message") if isinstance(error, dict) else None
            raise KeyPoolClientError(response.status_code, message or response.reason_phrase)
        return data

    def health(self) -> dict:
        """Check proxy health status."""
        return self._check(self._client.get("/health"))

    def status(self) -> PoolStatus:
        """Usage of every pooled key."""
        return PoolStatus.from_dict(self._check(self._client.get("/api/v1/keys/status")))

    def list_keys(self) -> list[str]:
        """Masked keys in priority order."""
        data = self._check(self._client.get("/admin/keys"))
        return [k.get("key", "") for k in data.get("keys", [])]

    def add_key(self, api_key: str) -> dict:
        """Add a key to the pool."""
        return self._check(self._client.post("/admin/keys", json={"apiKey": api_key}))

    def remove_key(self, key_ref: str) -> dict:
        """Remove a key by full value or display prefix."""
        return self._check(self._client.post("/admin/keys/delete", json={"apiKey": key_ref}))
