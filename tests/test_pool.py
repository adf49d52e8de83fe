"""Tests for the credential pool."""

import pytest

from keypool.errors import InvalidCredential
from keypool.pool import KeyPool
from keypool.quota.tracker import Granularity, QuotaTracker

from conftest import KEY_1, KEY_2, KEY_3


class TestSelection:
    """Tests for first-fit selection."""

    @pytest.mark.asyncio
    async def test_first_key_preferred(self, pool: KeyPool) -> None:
        assert await pool.select_available() == KEY_1

    @pytest.mark.asyncio
    async def test_skips_exhausted_key(self, pool: KeyPool, tracker: QuotaTracker) -> None:
        """An exhausted first key hands over to the second."""
        await tracker.poison(KEY_1, Granularity.MINUTE, 60)
        assert await pool.select_available() == KEY_2

    @pytest.mark.asyncio
    async def test_none_when_all_exhausted(
        self, pool: KeyPool, tracker: QuotaTracker
    ) -> None:
        for key in (KEY_1, KEY_2, KEY_3):
            await tracker.poison(key, Granularity.DAY, 60)
        assert await pool.select_available() is None

    @pytest.mark.asyncio
    async def test_empty_pool(self, tracker: QuotaTracker) -> None:
        assert await KeyPool(tracker).select_available() is None

    @pytest.mark.asyncio
    async def test_selection_does_not_charge(
        self, pool: KeyPool, tracker: QuotaTracker
    ) -> None:
        await pool.select_available()
        usage = await tracker.snapshot(KEY_1)
        assert usage.minute_used == 0


class TestMembership:
    """Tests for adding and removing credentials."""

    def test_initial_keys_deduplicated(self, tracker: QuotaTracker) -> None:
        pool = KeyPool(tracker, [KEY_1, KEY_2, KEY_1, ""])
        assert pool.list() == [KEY_1, KEY_2]
        assert len(pool) == 2

    def test_list_is_copy(self, pool: KeyPool) -> None:
        keys = pool.list()
        keys.clear()
        assert len(pool) == 3

    def test_add(self, tracker: QuotaTracker) -> None:
        pool = KeyPool(tracker, [KEY_1])
        assert pool.add(f"  {KEY_2} ") == KEY_2
        assert pool.list() == [KEY_1, KEY_2]
        assert KEY_2 in pool

    @pytest.mark.parametrize(
        "value,message",
        [
            ("", "API key is required"),
            (None, "API key is required"),
            ("pk-live-123", "Invalid API key format"),
            (KEY_1, "API key already exists"),
        ],
    )
    def test_add_rejected(self, pool: KeyPool, value, message: str) -> None:
        with pytest.raises(InvalidCredential) as exc_info:
            pool.add(value)

        assert exc_info.value.message == message
        assert exc_info.value.status_code == 400
        assert pool.list() == [KEY_1, KEY_2, KEY_3]

    def test_custom_prefix(self, tracker: QuotaTracker) -> None:
        pool = KeyPool(tracker, key_prefix="or-")
        pool.add("or-abc")
        with pytest.raises(InvalidCredential):
            pool.add("sk-abc")

    @pytest.mark.asyncio
    async def test_remove_exact(self, pool: KeyPool, tracker: QuotaTracker) -> None:
        """Removing a key discards its counters."""
        await tracker.record_usage(KEY_2)

        assert await pool.remove(KEY_2) == KEY_2

        assert pool.list() == [KEY_1, KEY_3]
        usage = await tracker.snapshot(KEY_2)
        assert usage.minute_used == 0
        assert usage.day_used == 0

    @pytest.mark.asyncio
    async def test_remove_by_display_form(self, pool: KeyPool) -> None:
        assert await pool.remove(KEY_3[:10] + "...") == KEY_3
        assert KEY_3 not in pool

    @pytest.mark.asyncio
    async def test_remove_missing(self, pool: KeyPool) -> None:
        with pytest.raises(InvalidCredential) as exc_info:
            await pool.remove("sk-unknown")

        assert exc_info.value.status_code == 404
        assert len(pool) == 3

    @pytest.mark.asyncio
    async def test_remove_empty(self, pool: KeyPool) -> None:
        with pytest.raises(InvalidCredential, match="required"):
            await pool.remove("   ")

    @pytest.mark.asyncio
    async def test_removed_key_not_selected(
        self, pool: KeyPool, tracker: QuotaTracker
    ) -> None:
        await pool.remove(KEY_1)
        assert await pool.select_available() == KEY_2


class TestStatus:
    """Tests for the pool status report."""

    @pytest.mark.asyncio
    async def test_status(self, pool: KeyPool, tracker: QuotaTracker) -> None:
        await tracker.poison(KEY_1, Granularity.DAY, 3600)
        await tracker.record_usage(KEY_2)

        status = await pool.status()

        assert status["total_keys"] == 3
        assert status["available_keys"] == 2
        assert [k["key"] for k in status["keys"]] == [
            KEY_1[:10] + "...",
            KEY_2[:10] + "...",
            KEY_3[:10] + "...",
        ]
        assert status["keys"][0]["available"] is False
        assert status["keys"][1]["minute"]["used"] == 1

    @pytest.mark.asyncio
    async def test_status_empty(self, tracker: QuotaTracker) -> None:
        status = await KeyPool(tracker).status()
        assert status == {"total_keys": 0, "available_keys": 0, "keys": []}
