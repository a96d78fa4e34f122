"""
Notification and accounting sinks.

The monitor emits domain events here; formatting and delivery belong to
the sink. Sinks must not raise into the monitor loop, so the composite
sink isolates each delivery.
"""

from typing import Protocol

import structlog

from shared.firestore_client import FirestoreClient, get_firestore_client
from shared.models import ExitEvent, ExitFailedEvent, PositionAlert

logger = structlog.get_logger(__name__)


class NotificationSink(Protocol):
    """Receiver of monitor domain events."""

    async def on_exit(self, event: ExitEvent) -> None: ...

    async def on_exit_failed(self, event: ExitFailedEvent) -> None: ...

    async def on_position_alert(self, alert: PositionAlert) -> None: ...


class LoggingNotificationSink:
    """Writes every event to the structured log."""

    async def on_exit(self, event: ExitEvent) -> None:
        logger.info(
            "exit_confirmed",
            owner_id=event.owner_id,
            asset_address=event.asset_address,
            reason=event.exit_reason.value,
            quantity=str(event.quantity),
            received_amount=event.received_amount,
            provider=event.provider.value,
            signature=event.signature,
        )

    async def on_exit_failed(self, event: ExitFailedEvent) -> None:
        logger.warning(
            "exit_failed_will_retry",
            owner_id=event.owner_id,
            asset_address=event.asset_address,
            reason=event.exit_reason.value,
            error=event.error,
        )

    async def on_position_alert(self, alert: PositionAlert) -> None:
        logger.error(
            "position_needs_attention",
            owner_id=alert.owner_id,
            asset_address=alert.asset_address,
            level=alert.level.value,
            error_count=alert.error_count,
            error=alert.error,
        )


class FirestoreNotificationSink:
    """Stores confirmed exits and alerts for accounting."""

    def __init__(self, firestore_client: FirestoreClient | None = None):
        self._firestore_client = firestore_client

    @property
    def firestore_client(self) -> FirestoreClient:
        """Get or create Firestore client."""
        if self._firestore_client is None:
            self._firestore_client = get_firestore_client()
        return self._firestore_client

    async def on_exit(self, event: ExitEvent) -> None:
        await self.firestore_client.record_exit_event(event)

    async def on_exit_failed(self, event: ExitFailedEvent) -> None:
        # Failed attempts are retried next tick; only the log keeps them
        return None

    async def on_position_alert(self, alert: PositionAlert) -> None:
        await self.firestore_client.record_position_alert(alert)


class CompositeNotificationSink:
    """Fans an event out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: list[NotificationSink]):
        self.sinks = sinks

    async def on_exit(self, event: ExitEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.on_exit(event)
            except Exception as e:
                logger.error("sink_delivery_error", sink=type(sink).__name__, event_type="exit", error=str(e))

    async def on_exit_failed(self, event: ExitFailedEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.on_exit_failed(event)
            except Exception as e:
                logger.error(
                    "sink_delivery_error", sink=type(sink).__name__, event_type="exit_failed", error=str(e)
                )

    async def on_position_alert(self, alert: PositionAlert) -> None:
        for sink in self.sinks:
            try:
                await sink.on_position_alert(alert)
            except Exception as e:
                logger.error(
                    "sink_delivery_error", sink=type(sink).__name__, event_type="position_alert", error=str(e)
                )


def get_notification_sink() -> CompositeNotificationSink:
    """Create the default sink: structured log plus Firestore accounting."""
    return CompositeNotificationSink([LoggingNotificationSink(), FirestoreNotificationSink()])
