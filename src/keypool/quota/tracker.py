"""
Per-credential usage windows backed by the counter store.

Each credential owns two counters, ``<credential>:minute`` and
``<credential>:day``. Usage is charged with an optimistic INCR that is
rolled back with DECR when the new value passes the limit, so concurrent
callers (in one process or many) can never leave a counter above its
limit once their call returns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from keypool.errors import LimitExceeded
from keypool.store.base import CounterStore

logger = logging.getLogger(__name__)


class Granularity(str, Enum):
    """Time window a counter tracks."""

    MINUTE = "minute"
    DAY = "day"


@dataclass(frozen=True)
class QuotaLimits:
    """Maximum completions per credential within each window."""

    minute: int = 20
    day: int = 200

    def for_granularity(self, granularity: Granularity) -> int:
        return self.minute if granularity is Granularity.MINUTE else self.day


DEFAULT_LIMITS = QuotaLimits()

# Expiry applied when the upstream reports exhaustion without a reset time
DEFAULT_POISON_TTL = {
    Granularity.MINUTE: 60,
    Granularity.DAY: 86400,
}

MINUTE_WINDOW_SECONDS = 60


def counter_key(credential: str, granularity: Granularity) -> str:
    """Store key for a credential's window."""
    return f"{credential}:{granularity.value}"


def mask_credential(credential: str) -> str:
    """Display form of a credential: first 10 characters plus an ellipsis."""
    return f"{credential[:10]}..."


def seconds_until_midnight(tz: ZoneInfo | None = None, now: datetime | None = None) -> int:
    """
    Seconds from now until the next midnight.

    Args:
        tz: Time zone to evaluate midnight in (process local time if None)
        now: Reference time, for tests

    Returns:
        Whole seconds, at least 1
    """
    if now is None:
        now = datetime.now(tz)
    # Naive datetimes are local time; timestamp() resolves DST for both forms
    tomorrow = datetime.combine(now.date() + timedelta(days=1), time(), tzinfo=now.tzinfo)
    return max(1, int(tomorrow.timestamp() - now.timestamp()))


def _parse_count(raw: str | None) -> int:
    if raw is None:
        return 0
    try:
        return max(0, int(raw))
    except ValueError:
        logger.warning(f"Ignoring non-integer counter value {raw!r}")
        return 0


@dataclass
class KeyUsage:
    """Read-only usage view of one credential."""

    credential: str
    minute_used: int
    minute_remaining: int
    minute_reset_in: int | None
    day_used: int
    day_remaining: int
    day_reset_in: int | None
    available: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": mask_credential(self.credential),
            "minute": {
                "used": self.minute_used,
                "remaining": self.minute_remaining,
                "resetIn": self.minute_reset_in,
            },
            "day": {
                "used": self.day_used,
                "remaining": self.day_remaining,
                "resetIn": self.day_reset_in,
            },
            "available": self.available,
        }


class QuotaTracker:
    """
    Owns the minute/day counters of every credential.

    All state lives in the counter store; the tracker itself is stateless
    apart from its configuration and can be shared between requests.
    """

    def __init__(
        self,
        store: CounterStore,
        limits: QuotaLimits = DEFAULT_LIMITS,
        timezone: str | None = None,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            store: Counter store holding the windows
            limits: Per-window limits
            timezone: IANA zone whose midnight closes the day window
                (process local time if None)
        """
        self._store = store
        self._limits = limits
        self._tz = ZoneInfo(timezone) if timezone else None

    @property
    def limits(self) -> QuotaLimits:
        return self._limits

    @property
    def store(self) -> CounterStore:
        return self._store

    def _window_ttl(self, granularity: Granularity) -> int:
        """Expiry set on the first write of a window."""
        if granularity is Granularity.MINUTE:
            return MINUTE_WINDOW_SECONDS
        return seconds_until_midnight(self._tz)

    async def increment_and_check(self, credential: str, granularity: Granularity) -> int:
        """
        Charge one unit against a window.

        Args:
            credential: Credential being charged
            granularity: Window to charge

        Returns:
            Counter value after the increment

        Raises:
            LimitExceeded: If the window was already full (the increment is
                rolled back before raising)
        """
        key = counter_key(credential, granularity)
        limit = self._limits.for_granularity(granularity)

        count = await self._store.incr(key)
        if count > limit:
            await self._store.decr(key)
            logger.warning(
                f"{granularity.value.capitalize()} limit exceeded for key "
                f"{mask_credential(credential)}, rolling back"
            )
            raise LimitExceeded(
                f"{granularity.value.capitalize()} limit exceeded",
                details={"granularity": granularity.value, "limit": limit},
            )

        await self._store.expire_if_unset(key, self._window_ttl(granularity))
        return count

    async def record_usage(self, credential: str) -> None:
        """
        Charge one completion against both windows.

        Both windows are attempted. A failure on one window does not undo
        the charge already applied to the other.

        Raises:
            LimitExceeded: If either window was full
        """
        failure: LimitExceeded | None = None
        counts: dict[str, int] = {}

        for granularity in (Granularity.MINUTE, Granularity.DAY):
            try:
                counts[granularity.value] = await self.increment_and_check(
                    credential, granularity
                )
            except LimitExceeded as e:
                failure = failure or e

        if failure is not None:
            raise failure

        logger.debug(
            f"Updated usage for key {mask_credential(credential)} "
            f"(minute: {counts['minute']}/{self._limits.minute}, "
            f"day: {counts['day']}/{self._limits.day})"
        )

    async def is_exhausted(self, credential: str) -> bool:
        """True if either window has reached its limit. Never mutates."""
        minute_raw, day_raw = await self._store.get_many([
            counter_key(credential, Granularity.MINUTE),
            counter_key(credential, Granularity.DAY),
        ])
        minute = _parse_count(minute_raw)
        day = _parse_count(day_raw)
        exhausted = minute >= self._limits.minute or day >= self._limits.day
        if exhausted:
            logger.debug(
                f"Key {mask_credential(credential)} exhausted "
                f"(minute: {minute}, day: {day})"
            )
        return exhausted

    async def poison(
        self,
        credential: str,
        granularity: Granularity,
        ttl_seconds: int | None = None,
    ) -> None:
        """
        Force a window to its limit.

        Used when the upstream reports exhaustion the local counters have
        not seen (e.g. the quota was consumed elsewhere).

        Args:
            credential: Credential to mark
            granularity: Window to saturate
            ttl_seconds: How long until the window reopens (defaults to
                60s for minute and 86400s for day)
        """
        ttl = ttl_seconds if ttl_seconds is not None else DEFAULT_POISON_TTL[granularity]
        ttl = max(1, int(ttl))
        await self._store.set_with_ttl(
            counter_key(credential, granularity),
            self._limits.for_granularity(granularity),
            ttl,
        )
        logger.info(
            f"Marked key {mask_credential(credential)} as {granularity.value} "
            f"limit reached, will reset in {ttl}s"
        )

    async def snapshot(self, credential: str) -> KeyUsage:
        """Current usage of both windows."""
        minute_key = counter_key(credential, Granularity.MINUTE)
        day_key = counter_key(credential, Granularity.DAY)

        minute_raw, day_raw = await self._store.get_many([minute_key, day_key])
        minute_ttl = await self._store.ttl(minute_key)
        day_ttl = await self._store.ttl(day_key)

        minute_used = _parse_count(minute_raw)
        day_used = _parse_count(day_raw)

        return KeyUsage(
            credential=credential,
            minute_used=minute_used,
            minute_remaining=max(0, self._limits.minute - minute_used),
            minute_reset_in=minute_ttl if minute_ttl > 0 else None,
            day_used=day_used,
            day_remaining=max(0, self._limits.day - day_used),
            day_reset_in=day_ttl if day_ttl > 0 else None,
            available=minute_used < self._limits.minute and day_used < self._limits.day,
        )

    async def discard(self, credential: str) -> None:
        """Delete both windows of a credential."""
        await self._store.delete(
            counter_key(credential, Granularity.MINUTE),
            counter_key(credential, Granularity.DAY),
        )
