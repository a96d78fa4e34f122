"""
Firestore client for ExitPilot.

Provides async interface to Google Cloud Firestore for:
- Exit rules (read)
- Buy events (read)
- Exited positions ledger
- Exit events and position alerts for accounting
"""

from datetime import datetime
from typing import Any

import structlog
from google.cloud import firestore
from google.cloud.firestore_v1 import AsyncClient

from shared.config import Settings, get_settings
from shared.models import (
    BuyEvent,
    ExitedLedgerEntry,
    ExitEvent,
    ExitRule,
    PositionAlert,
    PositionKey,
)

logger = structlog.get_logger(__name__)


class FirestoreError(Exception):
    """Custom exception for Firestore errors."""

    pass


class FirestoreClient:
    """
    Async client for Google Cloud Firestore.

    The exited ledger is the only state ExitPilot writes that it reads
    back; everything else is either collaborator input or an audit trail.
    """

    # Collection names
    EXIT_RULES_COLLECTION = "exit_rules"
    BUY_EVENTS_COLLECTION = "buy_events"
    EXITED_POSITIONS_COLLECTION = "exited_positions"
    EXIT_EVENTS_COLLECTION = "exit_events"
    POSITION_ALERTS_COLLECTION = "position_alerts"

    def __init__(self, settings: Settings | None = None):
        """
        Initialize Firestore client.

        Args:
            settings: Settings instance. If None, loads from environment.
        """
        self.settings = settings or get_settings()
        self._db: AsyncClient | None = None

    @property
    def db(self) -> AsyncClient:
        """Get Firestore client, creating if needed."""
        if self._db is None:
            self._db = firestore.AsyncClient(project=self.settings.gcp_project_id)
        return self._db

    async def close(self) -> None:
        """Close the Firestore client."""
        if self._db:
            self._db.close()
            self._db = None

    # =========================================================================
    # Exit Rule Operations
    # =========================================================================

    async def get_active_exit_rules(self) -> list[ExitRule]:
        """
        Get all active exit rules.

        Returns:
            List of ExitRule objects; malformed documents are skipped
        """
        try:
            query = self.db.collection(self.EXIT_RULES_COLLECTION).where("is_active", "==", True)

            rules = []
            async for doc in query.stream():
                try:
                    rules.append(ExitRule(id=doc.id, **doc.to_dict()))
                except Exception as e:
                    logger.warning("parse_exit_rule_error", doc_id=doc.id, error=str(e))
                    continue

            return rules
        except Exception as e:
            logger.error("get_active_exit_rules_error", error=str(e))
            raise FirestoreError(f"Failed to get exit rules: {str(e)}")

    # =========================================================================
    # Buy Event Operations
    # =========================================================================

    async def get_buy_events_since(
        self,
        owner_id: str,
        since: datetime,
    ) -> list[BuyEvent]:
        """
        Get an owner's buy events recorded after a point in time.

        Args:
            owner_id: Owner identifier
            since: Exclusive lower bound on the event timestamp

        Returns:
            Buy events, oldest first
        """
        try:
            query = (
                self.db.collection(self.BUY_EVENTS_COLLECTION)
                .where("owner_id", "==", owner_id)
                .where("timestamp", ">", since)
            )

            events = []
            async for doc in query.stream():
                try:
                    events.append(BuyEvent(**doc.to_dict()))
                except Exception as e:
                    logger.warning("parse_buy_event_error", doc_id=doc.id, error=str(e))
                    continue

            return sorted(events, key=lambda e: e.timestamp)
        except Exception as e:
            logger.error("get_buy_events_error", owner_id=owner_id, error=str(e))
            raise FirestoreError(f"Failed to get buy events: {str(e)}")

    async def get_latest_buy_event(
        self,
        owner_id: str,
        asset_address: str,
    ) -> BuyEvent | None:
        """
        Get the most recent buy of an asset by an owner.

        Returns:
            BuyEvent or None if the owner never bought it
        """
        try:
            query = (
                self.db.collection(self.BUY_EVENTS_COLLECTION)
                .where("owner_id", "==", owner_id)
                .where("asset_address", "==", asset_address)
                .order_by("timestamp", direction=firestore.Query.DESCENDING)
                .limit(1)
            )

            async for doc in query.stream():
                return BuyEvent(**doc.to_dict())
            return None
        except Exception as e:
            logger.error(
                "get_latest_buy_event_error",
                owner_id=owner_id,
                asset_address=asset_address,
                error=str(e),
            )
            raise FirestoreError(f"Failed to get latest buy event: {str(e)}")

    # =========================================================================
    # Exited Ledger Operations
    # =========================================================================

    async def is_position_exited(self, key: PositionKey) -> bool:
        """
        Check whether a position identity is in the exited ledger.

        Args:
            key: Position identity

        Returns:
            True if an entry exists
        """
        try:
            doc_ref = self.db.collection(self.EXITED_POSITIONS_COLLECTION).document(str(key))
            doc = await doc_ref.get()
            return bool(doc.exists)
        except Exception as e:
            logger.error("is_position_exited_error", key=str(key), error=str(e))
            raise FirestoreError(f"Failed to read exited ledger: {str(e)}")

    async def mark_position_exited(self, entry: ExitedLedgerEntry) -> ExitedLedgerEntry:
        """
        Upsert an exited ledger entry. Re-exiting overwrites the timestamp.

        Args:
            entry: Ledger entry

        Returns:
            The stored entry
        """
        try:
            doc_ref = self.db.collection(self.EXITED_POSITIONS_COLLECTION).document(str(entry.key))
            await doc_ref.set(entry.model_dump(mode="json"))
            logger.info(
                "position_marked_exited",
                owner_id=entry.owner_id,
                asset_address=entry.asset_address,
            )
            return entry
        except Exception as e:
            logger.error("mark_position_exited_error", key=str(entry.key), error=str(e))
            raise FirestoreError(f"Failed to write exited ledger: {str(e)}")

    async def get_exited_positions(self, owner_id: str | None = None) -> list[ExitedLedgerEntry]:
        """
        List exited ledger entries.

        Args:
            owner_id: Restrict to one owner if given

        Returns:
            Ledger entries
        """
        try:
            query: Any = self.db.collection(self.EXITED_POSITIONS_COLLECTION)
            if owner_id is not None:
                query = query.where("owner_id", "==", owner_id)

            entries = []
            async for doc in query.stream():
                try:
                    entries.append(ExitedLedgerEntry(**doc.to_dict()))
                except Exception as e:
                    logger.warning("parse_exited_entry_error", doc_id=doc.id, error=str(e))
                    continue

            return entries
        except Exception as e:
            logger.error("get_exited_positions_error", owner_id=owner_id, error=str(e))
            raise FirestoreError(f"Failed to list exited ledger: {str(e)}")

    # =========================================================================
    # Event Operations
    # =========================================================================

    async def record_exit_event(self, event: ExitEvent) -> None:
        """Store a confirmed exit for accounting. Keyed by signature."""
        try:
            doc_ref = self.db.collection(self.EXIT_EVENTS_COLLECTION).document(event.signature)
            await doc_ref.set(event.model_dump(mode="json"))
        except Exception as e:
            logger.error("record_exit_event_error", signature=event.signature, error=str(e))
            raise FirestoreError(f"Failed to record exit event: {str(e)}")

    async def record_position_alert(self, alert: PositionAlert) -> None:
        """Store a position alert."""
        try:
            doc_ref = self.db.collection(self.POSITION_ALERTS_COLLECTION).document()
            await doc_ref.set(alert.model_dump(mode="json"))
        except Exception as e:
            logger.error(
                "record_position_alert_error",
                owner_id=alert.owner_id,
                asset_address=alert.asset_address,
                error=str(e),
            )
            raise FirestoreError(f"Failed to record position alert: {str(e)}")


# Convenience function for creating client
def get_firestore_client() -> FirestoreClient:
    """Create and return a Firestore client instance."""
    return FirestoreClient()
