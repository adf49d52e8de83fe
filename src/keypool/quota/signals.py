"""
Rate-limit signals reported by the upstream provider.

OpenRouter reports exhaustion as an error object, either as the body of
a 429 response or embedded in a 200 event stream::

    {"error": {"code": 429,
               "message": "Rate limit exceeded: free-models-per-day",
               "metadata": {"headers": {"X-RateLimit-Reset": "1735689600000"}}}}

The helpers here turn such an object into counter poisoning.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from keypool.quota.tracker import Granularity, QuotaTracker, mask_credential

logger = logging.getLogger(__name__)

RATE_LIMIT_ERROR_CODE = 429
RESET_HEADER = "X-RateLimit-Reset"

DAY_MARKER = "free-models-per-day"
MINUTE_MARKER = "free-models-per-minute"

# Reset values above this are epoch milliseconds
_MILLISECONDS_THRESHOLD = 10**11


def is_rate_limit_error(payload: Any) -> bool:
    """True if a decoded body carries an embedded 429 error object."""
    if not isinstance(payload, dict):
        return False
    error = payload.get("error")
    if not isinstance(error, dict):
        return False
    code = error.get("code")
    return code == RATE_LIMIT_ERROR_CODE or code == str(RATE_LIMIT_ERROR_CODE)


def _header(headers: Any, name: str) -> Any:
    if not isinstance(headers, dict):
        return None
    for key, value in headers.items():
        if isinstance(key, str) and key.lower() == name.lower():
            return value
    return None


@dataclass(frozen=True)
class RateLimitSignal:
    """An upstream exhaustion report, consumed once."""

    message: str
    reset_epoch_seconds: int | None = None

    @classmethod
    def from_error(cls, error: Any) -> RateLimitSignal | None:
        """
        Build a signal from an upstream error object.

        Args:
            error: The ``error`` member of an upstream body

        Returns:
            Signal, or None if ``error`` is not an object
        """
        if not isinstance(error, dict):
            return None

        message = error.get("message")
        if not isinstance(message, str) or not message:
            message = "Unknown rate limit error"

        metadata = error.get("metadata")
        headers = metadata.get("headers") if isinstance(metadata, dict) else None
        raw_reset = _header(headers, RESET_HEADER)

        reset: int | None = None
        if raw_reset is not None:
            try:
                reset = int(float(raw_reset))
            except (TypeError, ValueError):
                logger.warning(f"Ignoring unparsable {RESET_HEADER} value {raw_reset!r}")
            else:
                if reset >= _MILLISECONDS_THRESHOLD:
                    reset //= 1000
                if reset <= 0:
                    reset = None

        return cls(message=message, reset_epoch_seconds=reset)

    def ttl_seconds(self, now: float | None = None) -> int | None:
        """Seconds until the reported reset, at least 1, or None if unknown."""
        if self.reset_epoch_seconds is None:
            return None
        now = time.time() if now is None else now
        return max(1, int(self.reset_epoch_seconds - now))

    def granularities(self) -> list[Granularity]:
        """Windows named by the message."""
        matched = []
        if DAY_MARKER in self.message:
            matched.append(Granularity.DAY)
        if MINUTE_MARKER in self.message:
            matched.append(Granularity.MINUTE)
        return matched


async def handle_rate_limit(
    tracker: QuotaTracker,
    credential: str,
    error: Any,
    now: float | None = None,
) -> list[Granularity]:
    """
    Poison a credential's windows after an upstream rate-limit report.

    With a reset time, only the windows named in the message are
    poisoned, until that reset. Without one, both windows are poisoned
    with their default expiry.

    Args:
        tracker: Quota tracker owning the counters
        credential: Credential the report applies to
        error: Upstream error object
        now: Reference epoch time, for tests

    Returns:
        Windows that were poisoned
    """
    signal = RateLimitSignal.from_error(error)
    if signal is None:
        logger.error("Received rate limit report without an error object")
        return []

    logger.warning(
        f"Rate limit exceeded for key {mask_credential(credential)}: {signal.message}"
    )

    ttl = signal.ttl_seconds(now)
    if ttl is None:
        poisoned = [Granularity.DAY, Granularity.MINUTE]
        for granularity in poisoned:
            await tracker.poison(credential, granularity)
        return poisoned

    poisoned = signal.granularities()
    if not poisoned:
        logger.warning(
            f"Rate limit message for key {mask_credential(credential)} names no "
            f"known window, counters left unchanged"
        )
    for granularity in poisoned:
        await tracker.poison(credential, granularity, ttl)
    return poisoned
