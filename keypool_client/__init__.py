"""
Key Pool Client SDK
Python client library and CLI for the key pool proxy.
"""

from .client import KeyPoolClient, KeyPoolClientError
from .models import KeyStatus, PoolStatus, WindowUsage

__version__ = "0.1.0"
__all__ = [
    "KeyPoolClient",
    "KeyPoolClientError",
    "KeyStatus",
    "PoolStatus",
    "WindowUsage",
]
