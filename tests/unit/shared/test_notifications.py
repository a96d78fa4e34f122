"""
Unit tests for shared/notifications.py
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shared.models import (
    AlertLevel,
    ExitEvent,
    ExitFailedEvent,
    ExitReason,
    PositionAlert,
    ProviderName,
)
from shared.notifications import (
    CompositeNotificationSink,
    FirestoreNotificationSink,
    LoggingNotificationSink,
)

OWNER_ID = "owner-001"
TOKEN_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


@pytest.fixture
def exit_event():
    return ExitEvent(
        owner_id=OWNER_ID,
        asset_address=TOKEN_MINT,
        quantity=Decimal("10"),
        exit_reason=ExitReason.TAKE_PROFIT,
        received_amount=2_500_000,
        provider=ProviderName.JUPITER,
        signature="sig-1",
    )


@pytest.fixture
def alert():
    return PositionAlert(
        owner_id=OWNER_ID,
        asset_address=TOKEN_MINT,
        level=AlertLevel.DEGRADED,
        error="boom",
        error_count=1,
    )


class TestFirestoreNotificationSink:
    """Tests for FirestoreNotificationSink."""

    @pytest.mark.asyncio
    async def test_records_exit_and_alert(self, mock_firestore_client, exit_event, alert):
        """Test exits and alerts are stored."""
        sink = FirestoreNotificationSink(mock_firestore_client)

        await sink.on_exit(exit_event)
        await sink.on_position_alert(alert)

        mock_firestore_client.record_exit_event.assert_awaited_once_with(exit_event)
        mock_firestore_client.record_position_alert.assert_awaited_once_with(alert)


class TestCompositeNotificationSink:
    """Tests for CompositeNotificationSink."""

    @pytest.mark.asyncio
    async def test_failing_sink_isolated(self, exit_event):
        """Test one sink raising does not stop delivery to the next."""
        broken = MagicMock()
        broken.on_exit = AsyncMock(side_effect=RuntimeError("down"))
        healthy = MagicMock()
        healthy.on_exit = AsyncMock()
        sink = CompositeNotificationSink([broken, healthy])

        await sink.on_exit(exit_event)

        healthy.on_exit.assert_awaited_once_with(exit_event)

    @pytest.mark.asyncio
    async def test_logging_sink_accepts_every_event(self, exit_event, alert):
        """Test the logging sink handles all event types."""
        sink = CompositeNotificationSink([LoggingNotificationSink()])
        failed = ExitFailedEvent(
            owner_id=OWNER_ID,
            asset_address=TOKEN_MINT,
            exit_reason=ExitReason.STOP_LOSS,
            error="All providers failed",
        )

        await sink.on_exit(exit_event)
        await sink.on_exit_failed(failed)
        await sink.on_position_alert(alert)

    @pytest.mark.asyncio
    async def test_failures_logged_for_every_hook(self, exit_event, alert):
        """Test a raising sink is logged with the event type on every hook."""
        broken = MagicMock()
        broken.on_exit = AsyncMock(side_effect=RuntimeError("down"))
        broken.on_exit_failed = AsyncMock(side_effect=RuntimeError("down"))
        broken.on_position_alert = AsyncMock(side_effect=RuntimeError("down"))
        healthy = MagicMock()
        healthy.on_exit = AsyncMock()
        healthy.on_exit_failed = AsyncMock()
        healthy.on_position_alert = AsyncMock()
        sink = CompositeNotificationSink([broken, healthy])
        failed = ExitFailedEvent(
            owner_id=OWNER_ID,
            asset_address=TOKEN_MINT,
            exit_reason=ExitReason.STOP_LOSS,
            error="All providers failed",
        )

        with patch("shared.notifications.logger") as logger:
            await sink.on_exit(exit_event)
            await sink.on_exit_failed(failed)
            await sink.on_position_alert(alert)

        healthy.on_exit_failed.assert_awaited_once_with(failed)
        healthy.on_position_alert.assert_awaited_once_with(alert)
        assert [c.args[0] for c in logger.error.call_args_list] == ["sink_delivery_error"] * 3
        assert [c.kwargs["event_type"] for c in logger.error.call_args_list] == ["exit", "exit_failed", "position_alert"]
        assert all("event" not in c.kwargs for c in logger.error.call_args_list)
