"""
Unit tests for the position store and exited ledger.
"""

import asyncio
from decimal import Decimal

import pytest

from services.positions.store import ExitedLedger, PositionStore
from shared.firestore_client import FirestoreError
from shared.models import ExitedLedgerEntry, PositionKey

OWNER_ID = "owner-001"
TOKEN_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


@pytest.fixture
def ledger(mock_firestore_client):
    return ExitedLedger(mock_firestore_client)


@pytest.fixture
def store(ledger):
    return PositionStore(ledger)


class TestExitedLedger:
    """Tests for ExitedLedger."""

    @pytest.mark.asyncio
    async def test_load_warms_cache(self, ledger, mock_firestore_client):
        """Test stored entries are cached on load."""
        mock_firestore_client.get_exited_positions.return_value = [
            ExitedLedgerEntry(owner_id=OWNER_ID, asset_address=TOKEN_MINT)
        ]

        loaded = await ledger.load()

        assert loaded == 1
        assert PositionKey(OWNER_ID, TOKEN_MINT) in ledger
        assert len(ledger) == 1

    @pytest.mark.asyncio
    async def test_is_exited_reads_through(self, ledger, mock_firestore_client):
        """Test a cache miss falls through to Firestore and caches a hit."""
        key = PositionKey(OWNER_ID, TOKEN_MINT)
        mock_firestore_client.is_position_exited.return_value = True

        assert await ledger.is_exited(key) is True
        assert await ledger.is_exited(key) is True

        mock_firestore_client.is_position_exited.assert_awaited_once_with(key)

    @pytest.mark.asyncio
    async def test_mark_exited_caches_before_write(self, ledger, mock_firestore_client):
        """Test a failed write still leaves the identity vetoed in-process."""
        key = PositionKey(OWNER_ID, TOKEN_MINT)
        mock_firestore_client.mark_position_exited.side_effect = FirestoreError("unavailable")

        with pytest.raises(FirestoreError):
            await ledger.mark_exited(key)

        assert key in ledger


class TestPositionStoreInit:
    """Tests for store construction."""

    def test_keeps_injected_empty_ledger(self, ledger):
        """Test an empty ledger passed in is the one used."""
        assert len(ledger) == 0

        assert PositionStore(ledger).ledger is ledger


class TestPositionStoreAdmit:
    """Tests for admission."""

    @pytest.mark.asyncio
    async def test_admit_new_position(self, store, make_position):
        """Test a new identity is admitted."""
        position = make_position()

        assert await store.admit(position) is True
        assert store.get(OWNER_ID, TOKEN_MINT) is position
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_admit_is_idempotent(self, store, make_position):
        """Test a second admission of the same identity is refused and keeps the first."""
        first = make_position(entry_price="1.0")
        second = make_position(entry_price="2.0")

        assert await store.admit(first) is True
        assert await store.admit(second) is False
        assert store.get(OWNER_ID, TOKEN_MINT).entry_price == Decimal("1.0")

    @pytest.mark.asyncio
    async def test_admit_vetoed_by_ledger(self, store, make_position, mock_firestore_client):
        """Test an identity on the exited ledger is never re-admitted."""
        mock_firestore_client.is_position_exited.return_value = True

        assert await store.admit(make_position()) is False
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_concurrent_admits_single_winner(self, store, make_position):
        """Test racing admissions of one identity admit exactly once."""
        results = await asyncio.gather(*(store.admit(make_position()) for _ in range(10)))

        assert results.count(True) == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_no_readmission_after_exit(self, store, make_position):
        """Test an exited identity cannot come back even if the ledger read misses."""
        position = make_position()
        await store.admit(position)

        await store.mark_exited(position.key)

        assert await store.admit(make_position()) is False


class TestPositionStoreExit:
    """Tests for removal and exit recording."""

    @pytest.mark.asyncio
    async def test_mark_exited_removes_and_records(self, store, make_position, mock_firestore_client):
        """Test marking exited writes the ledger and stops monitoring."""
        position = make_position()
        await store.admit(position)

        entry = await store.mark_exited(position.key)

        assert entry.owner_id == OWNER_ID
        assert entry.asset_address == TOKEN_MINT
        assert position.key not in store
        mock_firestore_client.mark_position_exited.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mark_exited_removes_on_write_failure(self, store, make_position, mock_firestore_client):
        """Test the position leaves the map even if the ledger write fails."""
        position = make_position()
        await store.admit(position)
        mock_firestore_client.mark_position_exited.side_effect = FirestoreError("unavailable")

        with pytest.raises(FirestoreError):
            await store.mark_exited(position.key)

        assert position.key not in store

    @pytest.mark.asyncio
    async def test_exit_and_admit_race(self, store, make_position, mock_firestore_client):
        """Test an admission racing an exit of the same identity never revives it."""
        position = make_position()
        await store.admit(position)

        async def slow_write(entry):
            await asyncio.sleep(0.01)
            return entry

        mock_firestore_client.mark_position_exited.side_effect = slow_write

        _, admitted = await asyncio.gather(
            store.mark_exited(position.key),
            store.admit(make_position()),
        )

        assert admitted is False
        assert position.key not in store

    @pytest.mark.asyncio
    async def test_admit_then_exit_race(self, store, make_position):
        """Test an exit queued behind an admission removes what was admitted."""
        position = make_position()

        admitted, _ = await asyncio.gather(
            store.admit(position),
            store.mark_exited(position.key),
        )

        assert admitted is True
        assert position.key not in store
        assert position.key in store.ledger

    @pytest.mark.asyncio
    async def test_remove_does_not_write_ledger(self, store, make_position, mock_firestore_client):
        """Test plain removal leaves the identity eligible for re-admission."""
        position = make_position()
        await store.admit(position)

        removed = await store.remove(position.key)

        assert removed is position
        mock_firestore_client.mark_position_exited.assert_not_awaited()
        assert await store.admit(make_position()) is True

    @pytest.mark.asyncio
    async def test_remove_missing(self, store):
        """Test removing an unknown identity returns None."""
        assert await store.remove(PositionKey(OWNER_ID, TOKEN_MINT)) is None


class TestHighWaterMark:
    """Tests for price updates."""

    @pytest.mark.asyncio
    async def test_raises_on_new_high(self, store, make_position):
        """Test a higher price moves the high-water mark."""
        position = make_position(entry_price="100")
        await store.admit(position)

        moved = store.update_high_water_mark(position.key, Decimal("150"))

        assert moved is True
        assert position.highest_price_seen == Decimal("150")
        assert position.last_price == Decimal("150")
        assert position.last_checked_at is not None

    @pytest.mark.asyncio
    async def test_never_lowers(self, store, make_position):
        """Test a lower price leaves the high-water mark alone."""
        position = make_position(entry_price="100", current_price="150")
        await store.admit(position)

        moved = store.update_high_water_mark(position.key, Decimal("120"))

        assert moved is False
        assert position.highest_price_seen == Decimal("150")
        assert position.last_price == Decimal("120")

    def test_unknown_identity(self, store):
        """Test updating an unmonitored identity is a no-op."""
        assert store.update_high_water_mark(PositionKey(OWNER_ID, TOKEN_MINT), Decimal("1")) is False


class TestErrorTracking:
    """Tests for per-position error counts."""

    @pytest.mark.asyncio
    async def test_record_and_clear(self, store, make_position):
        """Test error counts accumulate and clear."""
        position = make_position()
        await store.admit(position)

        assert store.record_error(position.key) == 1
        assert store.record_error(position.key) == 2
        assert store.degraded() == [position.key]

        store.clear_errors(position.key)

        assert store.error_count(position.key) == 0
        assert store.degraded() == []

    @pytest.mark.asyncio
    async def test_remove_clears_errors(self, store, make_position):
        """Test removal forgets the error count."""
        position = make_position()
        await store.admit(position)
        store.record_error(position.key)

        await store.remove(position.key)

        assert store.error_count(position.key) == 0


class TestIdentityLocks:
    """Tests for per-identity lock lifetime."""

    @pytest.mark.asyncio
    async def test_vetoed_admissions_leave_no_locks(self, store, mock_firestore_client, make_position, random_mint):
        """Test identities that never enter the map do not keep a lock."""
        mock_firestore_client.is_position_exited.return_value = True

        for _ in range(50):
            await store.admit(make_position(asset_address=random_mint))

        assert len(store) == 0
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_lock_released_after_exit(self, store, make_position):
        """Test a monitored identity's lock goes away once it is exited."""
        position = make_position()
        await store.admit(position)
        assert position.key in store._locks

        await store.mark_exited(position.key)

        assert store._locks == {}
        assert store._lock_users == {}
