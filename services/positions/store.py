"""
Position store implementation.

In-memory map of monitored positions plus the persistent exited ledger.
Admission and removal of the same identity are serialized by a per-identity
lock so an identity being exited cannot be re-admitted mid-exit.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator

import structlog

from shared.firestore_client import FirestoreClient, get_firestore_client
from shared.models import ExitedLedgerEntry, Position, PositionKey

logger = structlog.get_logger(__name__)


class ExitedLedger:
    """
    Durable record of exited identities, backed by Firestore.

    Known exits are cached in-process. The cache is updated before the
    Firestore write, so a failed write still vetoes re-admission for the
    life of the process.
    """

    def __init__(self, firestore_client: FirestoreClient | None = None):
        self._firestore_client = firestore_client
        self._exited: set[PositionKey] = set()

    @property
    def firestore_client(self) -> FirestoreClient:
        """Get or create Firestore client."""
        if self._firestore_client is None:
            self._firestore_client = get_firestore_client()
        return self._firestore_client

    async def load(self) -> int:
        """
        Warm the cache with every stored entry.

        Returns:
            Number of entries loaded
        """
        entries = await self.firestore_client.get_exited_positions()
        self._exited.update(entry.key for entry in entries)
        logger.info("exited_ledger_loaded", entries=len(entries))
        return len(entries)

    async def is_exited(self, key: PositionKey) -> bool:
        if key in self._exited:
            return True
        if await self.firestore_client.is_position_exited(key):
            self._exited.add(key)
            return True
        return False

    async def mark_exited(self, key: PositionKey) -> ExitedLedgerEntry:
        """Upsert the ledger entry for an identity."""
        self._exited.add(key)
        entry = ExitedLedgerEntry(owner_id=key.owner_id, asset_address=key.asset_address)
        return await self.firestore_client.mark_position_exited(entry)

    def __contains__(self, key: object) -> bool:
        return key in self._exited

    def __len__(self) -> int:
        return len(self._exited)


class PositionStore:
    """
    Owner of the monitored-position map.

    Loop bodies go through these methods and never touch the map directly.
    """

    def __init__(self, ledger: ExitedLedger | None = None):
        self.ledger = ledger if ledger is not None else ExitedLedger()
        self._positions: dict[PositionKey, Position] = {}
        self._locks: dict[PositionKey, asyncio.Lock] = {}
        self._lock_users: dict[PositionKey, int] = {}
        self._errors: dict[PositionKey, int] = {}

    @asynccontextmanager
    async def _locked(self, key: PositionKey) -> AsyncIterator[None]:
        """
        Hold the identity's lock.

        The lock is dropped once nobody holds or waits on it and the
        identity is no longer monitored.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                if key not in self._positions:
                    del self._locks[key]

    async def admit(self, position: Position) -> bool:
        """
        Start monitoring a position.

        Args:
            position: Position to admit

        Returns:
            False if the identity is already monitored or already exited
        """
        key = position.key
        async with self._locked(key):
            if key in self._positions:
                return False
            if await self.ledger.is_exited(key):
                logger.debug("admission_vetoed", owner_id=key.owner_id, asset_address=key.asset_address)
                return False
            self._positions[key] = position

        logger.info(
            "position_admitted",
            owner_id=key.owner_id,
            asset_address=key.asset_address,
            source=position.source.value,
            entry_price=str(position.entry_price),
            quantity=str(position.quantity),
        )
        return True

    def get(self, owner_id: str, asset_address: str) -> Position | None:
        return self._positions.get(PositionKey(owner_id, asset_address))

    def snapshot(self) -> list[PositionKey]:
        """Identities currently monitored, as a detached list."""
        return list(self._positions)

    def all(self) -> list[Position]:
        return list(self._positions.values())

    def is_monitored(self, key: PositionKey) -> bool:
        return key in self._positions

    def update_high_water_mark(self, key: PositionKey, price: Decimal) -> bool:
        """
        Record a fresh price; raise the high-water mark if it is exceeded.

        Returns:
            True if the high-water mark moved
        """
        position = self._positions.get(key)
        if position is None:
            return False

        position.last_price = price
        position.last_checked_at = datetime.now(timezone.utc)
        if price > position.highest_price_seen:
            position.highest_price_seen = price
            return True
        return False

    async def remove(self, key: PositionKey) -> Position | None:
        """Stop monitoring an identity without writing the ledger."""
        async with self._locked(key):
            self._errors.pop(key, None)
            return self._positions.pop(key, None)

    async def mark_exited(self, key: PositionKey) -> ExitedLedgerEntry:
        """
        Record an identity as exited and stop monitoring it.

        The position leaves the map even if the ledger write fails.

        Raises:
            FirestoreError: If the ledger write failed
        """
        async with self._locked(key):
            try:
                return await self.ledger.mark_exited(key)
            finally:
                self._positions.pop(key, None)
                self._errors.pop(key, None)

    def record_error(self, key: PositionKey) -> int:
        """Count one unexpected failure for an identity. Returns the running count."""
        self._errors[key] = self._errors.get(key, 0) + 1
        return self._errors[key]

    def clear_errors(self, key: PositionKey) -> None:
        self._errors.pop(key, None)

    def error_count(self, key: PositionKey) -> int:
        return self._errors.get(key, 0)

    def degraded(self) -> list[PositionKey]:
        """Identities with at least one unexpected failure since their last clean check."""
        return [key for key, count in self._errors.items() if count > 0]

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, key: object) -> bool:
        return key in self._positions
