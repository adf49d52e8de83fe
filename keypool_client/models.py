"""
Dataclasses for Key Pool API responses.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class WindowUsage:
    """Usage of one quota window."""

    used: int
    remaining: int
    reset_in: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "WindowUsage":
        return cls(
            used=data.get("used", 0),
            remaining=data.get("remaining", 0),
            reset_in=data.get("resetIn"),
        )


@dataclass
class KeyStatus:
    """Masked key with its usage."""

    key: str
    minute: WindowUsage
    day: WindowUsage
    available: bool

    @classmethod
    def from_dict(cls, data: dict) -> "KeyStatus":
        return cls(
            key=data.get("key", ""),
            minute=WindowUsage.from_dict(data.get("minute", {})),
            day=WindowUsage.from_dict(data.get("day", {})),
            available=data.get("available", False),
        )


@dataclass
class PoolStatus:
    """Status of the whole pool."""

    total_keys: int
    available_keys: int
    keys: list[KeyStatus] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "PoolStatus":
        return cls(
            total_keys=data.get("total_keys", 0),
            available_keys=data.get("available_keys", 0),
            keys=[KeyStatus.from_dict(k) for k in data.get("keys", [])],
        )
