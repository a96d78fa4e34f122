"""
Discovery service implementation.

Finds tokens owners have acquired and admits them into the position
store. Two paths feed the same idempotent ``admit``:
1. Buy events recorded since the previous tick
2. Current wallet balances, for buys the event feed missed
"""

from datetime import datetime, timedelta
from decimal import Decimal

import structlog

from services.positions.store import PositionStore
from shared.config import Settings, get_settings
from shared.errors import is_valid_address
from shared.firestore_client import FirestoreClient, get_firestore_client
from shared.models import (
    SOL_MINT,
    BuyEvent,
    ExitRule,
    Position,
    PositionKey,
    PositionSource,
    TickResult,
    TokenBalance,
    utcnow,
)
from shared.price_client import PriceClient, get_price_client
from shared.solana_client import SolanaClient, get_solana_client

logger = structlog.get_logger(__name__)


class Holding:
    """All of a wallet's token accounts for one mint, summed."""

    __slots__ = ("raw_amount", "decimals")

    def __init__(self, raw_amount: int, decimals: int):
        self.raw_amount = raw_amount
        self.decimals = decimals

    @property
    def amount(self) -> Decimal:
        return Decimal(self.raw_amount) / (Decimal(10) ** self.decimals)


def summarize_holdings(balances: list[TokenBalance]) -> dict[str, Holding]:
    """Sum balances per mint, dropping empty ones."""
    holdings: dict[str, Holding] = {}
    for balance in balances:
        if balance.raw_amount <= 0:
            continue
        holding = holdings.get(balance.mint)
        if holding is None:
            holdings[balance.mint] = Holding(balance.raw_amount, balance.decimals)
        else:
            holding.raw_amount += balance.raw_amount
    return holdings


class DiscoveryService:
    """
    Service for detecting newly acquired tokens.

    Rules are cached and refreshed on the slow cadence; every owner with an
    active rule is scanned on each discovery tick.
    """

    def __init__(
        self,
        store: PositionStore,
        solana_client: SolanaClient | None = None,
        firestore_client: FirestoreClient | None = None,
        price_client: PriceClient | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize discovery service.

        Args:
            store: Position store shared with the monitor
            solana_client: Optional RPC client for balances
            firestore_client: Optional Firestore client for rules and buy events
            price_client: Optional price source
            settings: Optional Settings instance
        """
        self.settings = settings or get_settings()
        self.store = store
        self._solana_client = solana_client
        self._firestore_client = firestore_client
        self._price_client = price_client
        self._rules: dict[str, ExitRule] = {}
        self._rules_loaded_at: datetime | None = None
        self._last_run_at: datetime | None = None

    @property
    def solana_client(self) -> SolanaClient:
        """Get or create Solana client."""
        if self._solana_client is None:
            self._solana_client = get_solana_client()
        return self._solana_client

    @property
    def firestore_client(self) -> FirestoreClient:
        """Get or create Firestore client."""
        if self._firestore_client is None:
            self._firestore_client = get_firestore_client()
        return self._firestore_client

    @property
    def price_client(self) -> PriceClient:
        """Get or create price client."""
        if self._price_client is None:
            self._price_client = get_price_client()
        return self._price_client

    @property
    def rules(self) -> dict[str, ExitRule]:
        """Active rule per owner."""
        return dict(self._rules)

    @property
    def last_run_at(self) -> datetime | None:
        return self._last_run_at

    # =========================================================================
    # Rules
    # =========================================================================

    async def refresh_rules(self) -> TickResult:
        """
        Reload active exit rules.

        An owner with several active rules uses the most recently created.

        Returns:
            TickResult with the number of owners in ``checked``
        """
        result = TickResult(loop="rules")
        rules = await self.firestore_client.get_active_exit_rules()

        by_owner: dict[str, ExitRule] = {}
        for rule in sorted(rules, key=lambda r: r.created_at.timestamp() if r.created_at else 0.0):
            by_owner[rule.owner_id] = rule

        self._rules = by_owner
        self._rules_loaded_at = utcnow()
        result.checked = len(by_owner)
        result.completed_at = utcnow()
        logger.info("exit_rules_refreshed", owners=len(by_owner), rules=len(rules))
        return result

    # =========================================================================
    # Tick
    # =========================================================================

    async def run_tick(self) -> TickResult:
        """
        Scan every owner with an active rule and admit new positions.

        Returns:
            TickResult with admitted count and per-owner errors
        """
        if self._rules_loaded_at is None:
            await self.refresh_rules()

        result = TickResult(loop="discovery")
        tick_started = utcnow()
        since = self._last_run_at or tick_started - timedelta(
            minutes=self.settings.discovery.initial_lookback_minutes
        )
        events_complete = True

        for owner_id, rule in self._rules.items():
            try:
                holdings = summarize_holdings(
                    await self.solana_client.get_token_balances(rule.wallet_address)
                )
            except Exception as e:
                logger.warning("discovery_balances_error", owner_id=owner_id, error=str(e))
                holdings = None

            try:
                events = await self.firestore_client.get_buy_events_since(owner_id, since)
                result.admitted += await self._admit_from_buy_events(rule, events, holdings)
            except Exception as e:
                events_complete = False
                result.errors.append(f"{owner_id}: buy events: {str(e)}")
                logger.error("discovery_buy_events_error", owner_id=owner_id, error=str(e))

            if self.settings.discovery.scan_balances and holdings is not None:
                try:
                    result.admitted += await self._admit_from_balances(rule, holdings)
                except Exception as e:
                    result.errors.append(f"{owner_id}: balances: {str(e)}")
                    logger.error("discovery_balances_admit_error", owner_id=owner_id, error=str(e))

            result.checked += 1

        # Retry the same window next tick if any owner's events could not be read
        if events_complete:
            self._last_run_at = tick_started

        result.completed_at = utcnow()
        if result.admitted or result.errors:
            logger.info(
                "discovery_tick_complete",
                owners=result.checked,
                admitted=result.admitted,
                errors=len(result.errors),
            )
        return result

    def _should_consider(self, owner_id: str, asset_address: str) -> bool:
        """Cheap pre-filter; ``admit`` remains the authority."""
        if asset_address == SOL_MINT or not is_valid_address(asset_address):
            return False
        key = PositionKey(owner_id, asset_address)
        return not self.store.is_monitored(key) and key not in self.store.ledger

    async def _admit_from_buy_events(
        self,
        rule: ExitRule,
        events: list[BuyEvent],
        holdings: dict[str, Holding] | None,
    ) -> int:
        admitted = 0
        seen: set[str] = set()

        # Latest buy of each asset sets the entry price
        for event in reversed(events):
            asset = event.asset_address
            if asset in seen or not self._should_consider(rule.owner_id, asset):
                continue
            seen.add(asset)

            holding = holdings.get(asset) if holdings is not None else None
            if holding is not None:
                quantity, decimals = holding.amount, holding.decimals
            elif holdings is not None:
                # Balance was read and the token is gone: nothing left to sell
                continue
            else:
                if event.amount is None or event.amount <= 0:
                    continue
                quantity = event.amount
                decimals = (
                    event.decimals
                    if event.decimals is not None
                    else await self.solana_client.get_mint_decimals(asset)
                )

            if await self._admit(rule, asset, quantity, decimals, event.price, PositionSource.BUY_EVENT):
                admitted += 1

        return admitted

    async def _admit_from_balances(self, rule: ExitRule, holdings: dict[str, Holding]) -> int:
        admitted = 0
        for asset, holding in holdings.items():
            if not self._should_consider(rule.owner_id, asset):
                continue

            latest = await self.firestore_client.get_latest_buy_event(rule.owner_id, asset)
            entry_price = latest.price if latest is not None else None

            if await self._admit(
                rule, asset, holding.amount, holding.decimals, entry_price, PositionSource.BALANCE
            ):
                admitted += 1
        return admitted

    async def _admit(
        self,
        rule: ExitRule,
        asset_address: str,
        quantity: Decimal,
        decimals: int,
        entry_price: Decimal | None,
        source: PositionSource,
    ) -> bool:
        """Price and admit one asset. Assets without a current price wait for a later tick."""
        current_price = await self.price_client.get_current_price(asset_address)
        if current_price is None:
            logger.debug("discovery_no_price", owner_id=rule.owner_id, asset_address=asset_address)
            return False

        if entry_price is None or entry_price <= 0:
            entry_price = current_price

        position = Position.create(
            owner_id=rule.owner_id,
            asset_address=asset_address,
            rule_id=rule.id,
            wallet_address=rule.wallet_address,
            conditions=rule.conditions,
            entry_price=entry_price,
            current_price=current_price,
            quantity=quantity,
            decimals=decimals,
            source=source,
        )
        return await self.store.admit(position)

    # =========================================================================
    # Direct Admission
    # =========================================================================

    async def admit_after_buy(
        self,
        owner_id: str,
        asset_address: str,
        entry_price: Decimal | None = None,
        quantity: Decimal | None = None,
        decimals: int | None = None,
    ) -> Position | None:
        """
        Admit a position right after a confirmed buy.

        Missing quantity is read from the owner's wallet.

        Returns:
            The admitted position, or None if it was not admitted

        Raises:
            LookupError: If the owner has no active exit rule
        """
        if self._rules_loaded_at is None:
            await self.refresh_rules()
        rule = self._rules.get(owner_id)
        if rule is None:
            raise LookupError(f"No active exit rule for owner {owner_id}")

        if quantity is None or decimals is None:
            holdings = summarize_holdings(
                await self.solana_client.get_token_balances(rule.wallet_address)
            )
            holding = holdings.get(asset_address)
            if holding is None:
                logger.info("admit_after_buy_no_balance", owner_id=owner_id, asset_address=asset_address)
                return None
            quantity = quantity if quantity is not None else holding.amount
            decimals = decimals if decimals is not None else holding.decimals

        if not await self._admit(rule, asset_address, quantity, decimals, entry_price, PositionSource.MANUAL):
            return None
        return self.store.get(owner_id, asset_address)
