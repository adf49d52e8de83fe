"""HTTP client for the upstream provider."""

from keypool.http.client import UpstreamClient

__all__ = ["UpstreamClient"]
