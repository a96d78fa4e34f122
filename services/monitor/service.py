"""
Position Monitor service implementation.

Re-prices monitored positions on every tick and sells those whose exit
condition fires.
"""

import asyncio
from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple

import structlog

from services.executor.service import ExecutorService, get_executor_service
from services.positions.store import PositionStore
from shared.config import Settings, get_settings
from shared.errors import SwapError
from shared.firestore_client import FirestoreError
from shared.models import (
    SOL_MINT,
    AlertLevel,
    ExitEvent,
    ExitFailedEvent,
    ExitReason,
    Position,
    PositionAlert,
    PositionKey,
    TickResult,
    utcnow,
)
from shared.notifications import NotificationSink, get_notification_sink
from shared.price_client import PriceClient, get_price_client
from shared.wallet import WalletProvider

logger = structlog.get_logger(__name__)


class ExitDecision(NamedTuple):
    """A fired exit condition and the price level that fired it."""

    reason: ExitReason
    threshold: Decimal


class PositionOutcome(str, Enum):
    """What happened to one position in one tick."""

    HOLD = "hold"
    NO_PRICE = "no_price"
    IN_FLIGHT = "in_flight"
    MISSING = "missing"
    EXITED = "exited"
    EXIT_FAILED = "exit_failed"
    ERROR = "error"


def evaluate_exit(position: Position, price: Decimal) -> ExitDecision | None:
    """
    Check a position's exit conditions against a price.

    Take-profit, then stop-loss, then trailing stop; the first match wins.
    Thresholds are inclusive. The high-water mark must already include
    ``price``.

    Args:
        position: Position to evaluate
        price: Current price

    Returns:
        ExitDecision, or None to hold
    """
    conditions = position.conditions

    take_profit = conditions.take_profit_price(position.entry_price)
    if take_profit is not None and price >= take_profit:
        return ExitDecision(ExitReason.TAKE_PROFIT, take_profit)

    stop_loss = conditions.stop_loss_price(position.entry_price)
    if stop_loss is not None and price <= stop_loss:
        return ExitDecision(ExitReason.STOP_LOSS, stop_loss)

    trailing_stop = conditions.trailing_stop_price(position.highest_price_seen)
    if trailing_stop is not None and price <= trailing_stop:
        return ExitDecision(ExitReason.TRAILING_STOP, trailing_stop)

    return None


class MonitorService:
    """
    Service for monitoring positions.

    At most one evaluation or exit per identity is in flight at any time,
    enforced by a pending set that is checked and filled before the first
    await. Different identities are evaluated concurrently, bounded by a
    semaphore.
    """

    def __init__(
        self,
        store: PositionStore,
        wallet_provider: WalletProvider,
        executor: ExecutorService | None = None,
        price_client: PriceClient | None = None,
        sink: NotificationSink | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize monitor service.

        Args:
            store: Position store shared with discovery
            wallet_provider: Resolves owners to signing wallets
            executor: Optional ExecutorService for sells
            price_client: Optional price source
            sink: Optional notification sink
            settings: Optional Settings instance
        """
        self.settings = settings or get_settings()
        self.store = store
        self.wallet_provider = wallet_provider
        self._executor = executor
        self._price_client = price_client
        self._sink = sink
        self._pending: set[PositionKey] = set()
        self._semaphore = asyncio.Semaphore(self.settings.monitor.max_concurrency)

    @property
    def executor(self) -> ExecutorService:
        """Get or create executor service."""
        if self._executor is None:
            self._executor = get_executor_service()
        return self._executor

    @property
    def price_client(self) -> PriceClient:
        """Get or create price client."""
        if self._price_client is None:
            self._price_client = get_price_client()
        return self._price_client

    @property
    def sink(self) -> NotificationSink:
        """Get or create notification sink."""
        if self._sink is None:
            self._sink = get_notification_sink()
        return self._sink

    @property
    def pending(self) -> frozenset[PositionKey]:
        """Identities with an evaluation or exit in flight."""
        return frozenset(self._pending)

    # =========================================================================
    # Tick
    # =========================================================================

    async def run_tick(self) -> TickResult:
        """
        Evaluate every monitored position once.

        Returns:
            TickResult summarising the tick
        """
        result = TickResult(loop="monitor")
        keys = self.store.snapshot()

        outcomes = await asyncio.gather(*(self._bounded(key) for key in keys))

        for key, outcome in zip(keys, outcomes):
            if outcome in (PositionOutcome.IN_FLIGHT, PositionOutcome.MISSING, PositionOutcome.NO_PRICE):
                result.skipped += 1
                continue
            result.checked += 1
            if outcome == PositionOutcome.EXITED:
                result.exits += 1
            elif outcome == PositionOutcome.EXIT_FAILED:
                result.exits_failed += 1
            elif outcome == PositionOutcome.ERROR:
                result.errors.append(str(key))

        result.completed_at = utcnow()
        if result.exits or result.exits_failed or result.errors:
            logger.info(
                "monitor_tick_complete",
                positions=len(keys),
                exits=result.exits,
                exits_failed=result.exits_failed,
                errors=len(result.errors),
            )
        return result

    async def _bounded(self, key: PositionKey) -> PositionOutcome:
        async with self._semaphore:
            return await self.process_position(key)

    async def process_position(self, key: PositionKey) -> PositionOutcome:
        """
        Evaluate one position and exit it if a condition fires.

        Args:
            key: Position identity

        Returns:
            PositionOutcome
        """
        if key in self._pending:
            logger.debug("position_in_flight", owner_id=key.owner_id, asset_address=key.asset_address)
            return PositionOutcome.IN_FLIGHT
        self._pending.add(key)

        try:
            outcome = await self._evaluate(key)
        except Exception as e:
            return await self._handle_unexpected(key, e)
        finally:
            self._pending.discard(key)

        # A completed check ends a degraded streak
        if outcome in (PositionOutcome.HOLD, PositionOutcome.EXIT_FAILED):
            self.store.clear_errors(key)
        return outcome

    async def _evaluate(self, key: PositionKey) -> PositionOutcome:
        position = self.store.get(key.owner_id, key.asset_address)
        if position is None:
            return PositionOutcome.MISSING

        price = await self.price_client.get_current_price(key.asset_address)
        if price is None:
            return PositionOutcome.NO_PRICE

        self.store.update_high_water_mark(key, price)
        decision = evaluate_exit(position, price)

        if decision is None:
            return PositionOutcome.HOLD

        return await self._execute_exit(position, decision, price)

    async def _execute_exit(
        self,
        position: Position,
        decision: ExitDecision,
        price: Decimal,
    ) -> PositionOutcome:
        """Sell the full tracked quantity for SOL and settle the outcome."""
        key = position.key
        logger.info(
            "exit_triggered",
            owner_id=key.owner_id,
            asset_address=key.asset_address,
            reason=decision.reason.value,
            price=str(price),
            threshold=str(decision.threshold),
            entry_price=str(position.entry_price),
            highest_price_seen=str(position.highest_price_seen),
        )

        wallet = await self.wallet_provider.get_wallet(key.owner_id)
        if wallet is None or wallet.address != position.wallet_address:
            error = "no signing wallet for owner" if wallet is None else "wallet does not match position"
            await self._notify_failed(position, decision, price, error)
            return PositionOutcome.EXIT_FAILED

        try:
            result = await self.executor.execute_swap(
                input_mint=key.asset_address,
                output_mint=SOL_MINT,
                amount=position.raw_quantity,
                wallet=wallet,
                slippage_bps=self.settings.dispatcher.default_slippage_bps,
                is_sell=True,
            )
        except SwapError as e:
            await self._notify_failed(position, decision, price, str(e))
            return PositionOutcome.EXIT_FAILED

        try:
            await self.store.mark_exited(key)
        except FirestoreError as e:
            logger.error(
                "exited_ledger_write_failed",
                owner_id=key.owner_id,
                asset_address=key.asset_address,
                error=str(e),
            )

        event = ExitEvent(
            owner_id=key.owner_id,
            asset_address=key.asset_address,
            quantity=position.quantity,
            exit_reason=decision.reason,
            received_amount=result.received_amount,
            provider=result.provider,
            signature=result.signature,
            rule_id=position.rule_id,
            entry_price=position.entry_price,
            trigger_price=price,
        )
        try:
            await self.sink.on_exit(event)
        except Exception as e:
            logger.error("exit_notification_error", signature=result.signature, error=str(e))
        return PositionOutcome.EXITED

    async def _notify_failed(
        self,
        position: Position,
        decision: ExitDecision,
        price: Decimal,
        error: str,
    ) -> None:
        event = ExitFailedEvent(
            owner_id=position.owner_id,
            asset_address=position.asset_address,
            exit_reason=decision.reason,
            error=error,
            trigger_price=price,
        )
        try:
            await self.sink.on_exit_failed(event)
        except Exception as e:
            logger.error("exit_failed_notification_error", error=str(e))

    async def _handle_unexpected(self, key: PositionKey, error: Exception) -> PositionOutcome:
        """
        Degrade a position after an unexpected error; evict it once the
        configured number of consecutive errors is reached.
        """
        count = self.store.record_error(key)
        threshold = self.settings.monitor.max_position_errors
        logger.error(
            "position_evaluation_error",
            owner_id=key.owner_id,
            asset_address=key.asset_address,
            error=f"{type(error).__name__}: {str(error)}",
            error_count=count,
            threshold=threshold,
        )

        level = None
        if count >= threshold:
            await self.store.remove(key)
            level = AlertLevel.EVICTED
        elif count == 1:
            level = AlertLevel.DEGRADED

        if level is not None:
            alert = PositionAlert(
                owner_id=key.owner_id,
                asset_address=key.asset_address,
                level=level,
                error=str(error),
                error_count=count,
            )
            try:
                await self.sink.on_position_alert(alert)
            except Exception as e:
                logger.error("position_alert_notification_error", error=str(e))
        return PositionOutcome.ERROR

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_positions_summary(self) -> dict[str, Any]:
        """
        Summary of monitored positions with their exit levels.

        Returns:
            Summary dictionary
        """
        positions = self.store.all()
        return {
            "count": len(positions),
            "pending": len(self._pending),
            "degraded": [str(key) for key in self.store.degraded()],
            "positions": [
                {
                    "owner_id": p.owner_id,
                    "asset_address": p.asset_address,
                    "rule_id": p.rule_id,
                    "source": p.source.value,
                    "quantity": str(p.quantity),
                    "entry_price": str(p.entry_price),
                    "last_price": str(p.last_price) if p.last_price is not None else None,
                    "highest_price_seen": str(p.highest_price_seen),
                    "pnl_percent": str(p.pnl_percent) if p.pnl_percent is not None else None,
                    "take_profit_at": _fmt(p.conditions.take_profit_price(p.entry_price)),
                    "stop_loss_at": _fmt(p.conditions.stop_loss_price(p.entry_price)),
                    "trailing_stop_at": _fmt(p.conditions.trailing_stop_price(p.highest_price_seen)),
                    "last_checked_at": p.last_checked_at.isoformat() if p.last_checked_at else None,
                    "error_count": self.store.error_count(p.key),
                }
                for p in positions
            ],
        }


def _fmt(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None
