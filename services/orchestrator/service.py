"""
Orchestrator service implementation.

Wires the store, executor, monitor and discovery together and runs their
loops on independent schedules.
"""

from decimal import Decimal
from typing import Any

import structlog

from services.discovery.service import DiscoveryService
from services.executor.service import ExecutorService, build_providers
from services.monitor.service import MonitorService
from services.orchestrator.scheduler import Scheduler
from services.positions.store import ExitedLedger, PositionStore
from shared.config import Settings, get_settings
from shared.firestore_client import FirestoreClient, FirestoreError, get_firestore_client
from shared.models import CircuitBreakerState, Position, ProviderName, TickResult
from shared.notifications import (
    CompositeNotificationSink,
    FirestoreNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
)
from shared.price_client import PriceClient
from shared.solana_client import SolanaClient
from shared.wallet import KeypairWalletProvider, WalletProvider

logger = structlog.get_logger(__name__)

MONITOR_TASK = "monitor"
DISCOVERY_TASK = "discovery"
RULES_TASK = "rules"


class OrchestratorService:
    """
    Main orchestrator service.

    Owns every long-lived component and the scheduler that drives the
    monitor (fast), discovery (slow) and rule refresh (slowest) loops.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        solana_client: SolanaClient | None = None,
        firestore_client: FirestoreClient | None = None,
        price_client: PriceClient | None = None,
        store: PositionStore | None = None,
        executor: ExecutorService | None = None,
        wallet_provider: WalletProvider | None = None,
        sink: NotificationSink | None = None,
        monitor_service: MonitorService | None = None,
        discovery_service: DiscoveryService | None = None,
    ):
        """Initialize orchestrator with all services."""
        self.settings = settings or get_settings()

        self.solana_client = solana_client or SolanaClient(self.settings)
        self.firestore_client = firestore_client or get_firestore_client()
        self.price_client = price_client or PriceClient(self.settings)
        self.store = store if store is not None else PositionStore(ExitedLedger(self.firestore_client))
        self.executor = executor or ExecutorService(
            build_providers(self.solana_client, self.settings),
            settings=self.settings,
        )
        self.wallet_provider = wallet_provider or KeypairWalletProvider(
            self.solana_client, settings=self.settings
        )
        self.sink = sink or CompositeNotificationSink(
            [LoggingNotificationSink(), FirestoreNotificationSink(self.firestore_client)]
        )

        self.monitor = monitor_service or MonitorService(
            store=self.store,
            wallet_provider=self.wallet_provider,
            executor=self.executor,
            price_client=self.price_client,
            sink=self.sink,
            settings=self.settings,
        )
        self.discovery = discovery_service or DiscoveryService(
            store=self.store,
            solana_client=self.solana_client,
            firestore_client=self.firestore_client,
            price_client=self.price_client,
            settings=self.settings,
        )

        self.scheduler = Scheduler()
        if self.settings.monitor.enabled:
            self.scheduler.add(MONITOR_TASK, self.settings.monitor.interval_seconds, self.monitor.run_tick)
        if self.settings.discovery.enabled:
            self.scheduler.add(
                DISCOVERY_TASK, self.settings.discovery.interval_seconds, self.discovery.run_tick
            )
            self.scheduler.add(
                RULES_TASK,
                self.settings.discovery.rule_refresh_interval_seconds,
                self.discovery.refresh_rules,
            )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Warm the exited ledger and start every loop."""
        try:
            await self.store.ledger.load()
        except FirestoreError as e:
            # Per-identity ledger reads still veto re-admission
            logger.warning("exited_ledger_preload_failed", error=str(e))

        self.scheduler.start()
        logger.info(
            "orchestrator_started",
            tasks=list(self.scheduler.tasks),
            providers=[p.name.value for p in self.executor.providers],
        )

    async def stop(self) -> None:
        """Stop every loop and close clients."""
        await self.scheduler.stop()
        await self.executor.close()
        await self.price_client.close()
        await self.solana_client.close()
        await self.firestore_client.close()
        logger.info("orchestrator_stopped")

    # =========================================================================
    # Manual Triggers
    # =========================================================================

    async def run_monitor(self) -> TickResult:
        """Run one monitor tick now."""
        return await self.monitor.run_tick()

    async def run_discovery(self) -> TickResult:
        """Run one discovery tick now."""
        return await self.discovery.run_tick()

    async def refresh_rules(self) -> TickResult:
        """Reload exit rules now."""
        return await self.discovery.refresh_rules()

    async def admit_position(
        self,
        owner_id: str,
        asset_address: str,
        entry_price: Decimal | None = None,
        quantity: Decimal | None = None,
        decimals: int | None = None,
    ) -> Position | None:
        """Admit a position after a confirmed buy."""
        return await self.discovery.admit_after_buy(
            owner_id=owner_id,
            asset_address=asset_address,
            entry_price=entry_price,
            quantity=quantity,
            decimals=decimals,
        )

    # =========================================================================
    # Status
    # =========================================================================

    def get_provider_status(self) -> list[CircuitBreakerState]:
        return self.executor.get_provider_status()

    def reset_provider(self, name: ProviderName) -> CircuitBreakerState:
        return self.executor.reset_provider(name)

    def get_system_status(self) -> dict[str, Any]:
        """
        Get overall system status.

        Returns:
            Dictionary with scheduler, store and provider state
        """
        return {
            "environment": self.settings.environment,
            "scheduler_running": self.scheduler.running,
            "tasks": self.scheduler.status(),
            "positions": {
                "monitored": len(self.store),
                "pending": len(self.monitor.pending),
                "degraded": len(self.store.degraded()),
                "exited_known": len(self.store.ledger),
            },
            "owners_with_rules": len(self.discovery.rules),
            "executor": self.executor.summary(),
            "circuit_breakers": [s.model_dump(mode="json") for s in self.get_provider_status()],
        }


# Factory function
def get_orchestrator_service() -> OrchestratorService:
    """Create and return an OrchestratorService instance."""
    return OrchestratorService()
