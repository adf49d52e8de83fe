"""
Quota module for per-credential usage windows.

Provides the minute/day counters kept in the counter store and the
handling of rate-limit reports coming back from the upstream.
"""

from keypool.quota.tracker import (
    DEFAULT_LIMITS,
    Granularity,
    KeyUsage,
    QuotaLimits,
    QuotaTracker,
    counter_key,
    mask_credential,
)
from keypool.quota.signals import (
    RateLimitSignal,
    handle_rate_limit,
    is_rate_limit_error,
)

__all__ = [
    "DEFAULT_LIMITS",
    "Granularity",
    "KeyUsage",
    "QuotaLimits",
    "QuotaTracker",
    "RateLimitSignal",
    "counter_key",
    "handle_rate_limit",
    "is_rate_limit_error",
    "mask_credential",
]
