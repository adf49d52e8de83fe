"""Ordered pool of upstream credentials with first-fit selection."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from keypool.errors import InvalidCredential
from keypool.quota.tracker import QuotaTracker, mask_credential

logger = logging.getLogger(__name__)

DISPLAY_ELLIPSIS = "..."


class KeyPool:
    """
    Process-local list of credentials.

    Selection is a deterministic first-fit over insertion order: earlier
    credentials are used until they saturate, then the next one takes
    over. The list is only changed through :meth:`add` and
    :meth:`remove`.
    """

    def __init__(
        self,
        tracker: QuotaTracker,
        credentials: Iterable[str] = (),
        key_prefix: str = "sk-",
    ) -> None:
        """
        Initialize the pool.

        Args:
            tracker: Quota tracker consulted during selection
            credentials: Initial credentials, in priority order (copied;
                duplicates are skipped)
            key_prefix: Prefix every credential must start with
        """
        self._tracker = tracker
        self._key_prefix = key_prefix
        self._keys: list[str] = []
        for credential in credentials:
            if credential and credential not in self._keys:
                self._keys.append(credential)

    @property
    def tracker(self) -> QuotaTracker:
        return self._tracker

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, credential: object) -> bool:
        return credential in self._keys

    def list(self) -> list[str]:
        """Credentials in priority order (a copy)."""
        return list(self._keys)

    async def select_available(self) -> str | None:
        """
        First credential whose windows are not exhausted.

        Returns:
            Credential, or None when every credential is exhausted
        """
        for credential in list(self._keys):
            if await self._tracker.is_exhausted(credential):
                logger.debug(f"Skipping key {mask_credential(credential)}")
                continue
            logger.debug(f"Selected API key: {mask_credential(credential)}")
            return credential

        logger.warning("No available API keys found")
        return None

    def add(self, credential: str | None) -> str:
        """
        Append a credential.

        Raises:
            InvalidCredential: If empty, wrongly prefixed or already present
        """
        credential = (credential or "").strip()
        if not credential:
            raise InvalidCredential("API key is required")

        if not credential.startswith(self._key_prefix):
            raise InvalidCredential("Invalid API key format")

        if credential in self._keys:
            raise InvalidCredential("API key already exists")

        self._keys.append(credential)
        logger.info(f"Added API key {mask_credential(credential)}")
        return credential

    async def remove(self, credential_or_prefix: str | None) -> str:
        """
        Remove a credential and discard its counters.

        Args:
            credential_or_prefix: Exact credential, or its display form
                (a prefix, optionally followed by ``...``)

        Returns:
            The removed credential

        Raises:
            InvalidCredential: If nothing matches
        """
        target = (credential_or_prefix or "").strip()
        if not target:
            raise InvalidCredential("API key is required")

        match = self._find(target)
        if match is None:
            raise InvalidCredential("API key not found", status_code=404)

        self._keys.remove(match)
        await self._tracker.discard(match)
        logger.info(f"Removed API key {mask_credential(match)}")
        return match

    def _find(self, target: str) -> str | None:
        if target in self._keys:
            return target

        prefix = target.split(DISPLAY_ELLIPSIS)[0]
        if not prefix:
            return None
        for credential in self._keys:
            if credential.startswith(prefix):
                return credential
        return None

    async def status(self) -> dict[str, Any]:
        """
        Usage of every credential, for monitoring.

        Returns:
            Dict with ``total_keys``, ``available_keys`` and per-key usage
        """
        usages = [await self._tracker.snapshot(credential) for credential in list(self._keys)]
        return {
            "total_keys": len(usages),
            "available_keys": sum(1 for usage in usages if usage.available),
            "keys": [usage.to_dict() for usage in usages],
        }
