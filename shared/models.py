"""
Pydantic models for ExitPilot.

Defines all data models used across services.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field, field_validator, model_validator

SOL_MINT = "So11111111111111111111111111111111111111112"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class ProviderName(str, Enum):
    """Swap execution providers, in no particular order."""

    JUPITER = "jupiter"
    RAYDIUM = "raydium"


class ExitReason(str, Enum):
    """Condition that triggered an exit."""

    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"


class PositionSource(str, Enum):
    """How a position entered monitoring."""

    BUY_EVENT = "buy_event"
    BALANCE = "balance"
    MANUAL = "manual"


class TransactionVersion(str, Enum):
    """Serialized transaction format."""

    V0 = "V0"
    LEGACY = "LEGACY"


class AlertLevel(str, Enum):
    """Severity of a position alert."""

    DEGRADED = "degraded"
    EVICTED = "evicted"


# =============================================================================
# Position Models
# =============================================================================


class PositionKey(NamedTuple):
    """Identity of a monitored position."""

    owner_id: str
    asset_address: str

    def __str__(self) -> str:
        return f"{self.owner_id}_{self.asset_address}"


class ExitConditions(BaseModel):
    """Exit policy attached to a position. Percentages are positive."""

    take_profit_pct: Decimal | None = Field(default=None, gt=0)
    stop_loss_pct: Decimal | None = Field(default=None, gt=0)
    trailing_stop_pct: Decimal | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def require_one_condition(self) -> "ExitConditions":
        """At least one condition must be set."""
        if (
            self.take_profit_pct is None
            and self.stop_loss_pct is None
            and self.trailing_stop_pct is None
        ):
            raise ValueError("at least one exit condition is required")
        return self

    def take_profit_price(self, entry_price: Decimal) -> Decimal | None:
        if self.take_profit_pct is None:
            return None
        return entry_price * (1 + self.take_profit_pct / 100)

    def stop_loss_price(self, entry_price: Decimal) -> Decimal | None:
        if self.stop_loss_pct is None:
            return None
        return entry_price * (1 - self.stop_loss_pct / 100)

    def trailing_stop_price(self, highest_price: Decimal) -> Decimal | None:
        if self.trailing_stop_pct is None:
            return None
        return highest_price * (1 - self.trailing_stop_pct / 100)


class Position(BaseModel):
    """A tracked holding with an exit policy."""

    owner_id: str
    asset_address: str
    rule_id: str
    wallet_address: str
    conditions: ExitConditions
    entry_price: Decimal = Field(gt=0)
    highest_price_seen: Decimal = Field(gt=0)
    quantity: Decimal = Field(gt=0)
    decimals: int = Field(default=9, ge=0)
    source: PositionSource = PositionSource.MANUAL
    admitted_at: datetime = Field(default_factory=utcnow)
    last_checked_at: datetime | None = None
    last_price: Decimal | None = None

    @model_validator(mode="after")
    def check_high_water_mark(self) -> "Position":
        """The high-water mark never sits below the entry price."""
        if self.highest_price_seen < self.entry_price:
            self.highest_price_seen = self.entry_price
        return self

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.owner_id, self.asset_address)

    @property
    def raw_quantity(self) -> int:
        """Quantity in the token's smallest unit."""
        return int(self.quantity * (Decimal(10) ** self.decimals))

    @property
    def pnl_percent(self) -> Decimal | None:
        if self.last_price is None:
            return None
        return (self.last_price - self.entry_price) / self.entry_price * 100

    @classmethod
    def create(
        cls,
        owner_id: str,
        asset_address: str,
        rule_id: str,
        wallet_address: str,
        conditions: ExitConditions,
        entry_price: Decimal,
        current_price: Decimal,
        quantity: Decimal,
        decimals: int = 9,
        source: PositionSource = PositionSource.MANUAL,
    ) -> "Position":
        """Build a position with the high-water mark set from entry and current price."""
        return cls(
            owner_id=owner_id,
            asset_address=asset_address,
            rule_id=rule_id,
            wallet_address=wallet_address,
            conditions=conditions,
            entry_price=entry_price,
            highest_price_seen=max(entry_price, current_price),
            quantity=quantity,
            decimals=decimals,
            source=source,
            last_price=current_price,
        )


class ExitedLedgerEntry(BaseModel):
    """Persistent record of a fully exited position."""

    owner_id: str
    asset_address: str
    exited_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.owner_id, self.asset_address)


# =============================================================================
# Collaborator Read Models
# =============================================================================


class ExitRule(BaseModel):
    """An owner's active exit policy."""

    id: str
    owner_id: str
    wallet_address: str
    conditions: ExitConditions
    is_active: bool = True
    created_at: datetime | None = None


class BuyEvent(BaseModel):
    """A recorded buy of an asset by an owner."""

    owner_id: str
    asset_address: str
    price: Decimal | None = None
    amount: Decimal | None = None
    decimals: int | None = None
    signature: str | None = None
    timestamp: datetime

    @field_validator("price", "amount", mode="before")
    @classmethod
    def parse_decimal(cls, v: Any) -> Any:
        """Store floats through their string form to avoid binary noise."""
        if isinstance(v, float):
            return Decimal(str(v))
        return v


class TokenBalance(BaseModel):
    """A token account balance held by a wallet."""

    mint: str
    token_account: str
    raw_amount: int = Field(ge=0)
    decimals: int = Field(ge=0)

    @property
    def amount(self) -> Decimal:
        return Decimal(self.raw_amount) / (Decimal(10) ** self.decimals)


# =============================================================================
# Swap Models
# =============================================================================


class SwapQuote(BaseModel):
    """A provider's quote for a swap."""

    provider: ProviderName
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    slippage_bps: int
    price_impact_pct: Decimal | None = None
    tx_version: TransactionVersion = TransactionVersion.V0
    raw: dict[str, Any] = Field(default_factory=dict)


class SwapSubmission(BaseModel):
    """Transactions broadcast for a quote, awaiting confirmation."""

    provider: ProviderName
    signatures: list[str]
    owner: str
    input_mint: str
    output_mint: str
    expected_out_amount: int = 0
    last_valid_block_height: int | None = None


class Confirmation(BaseModel):
    """On-chain confirmation with the observed balance change."""

    signatures: list[str]
    input_delta: int = 0
    output_delta: int = 0
    slot: int | None = None


class ProviderAttempt(BaseModel):
    """One execution try against a provider."""

    provider: ProviderName
    input_mint: str
    output_mint: str
    amount: int
    slippage_bps: int
    success: bool = False
    signatures: list[str] = Field(default_factory=list)
    received_amount: int | None = None
    error_kind: str | None = None
    error_message: str | None = None
    attempts: int = 0
    skipped: bool = False


class SwapResult(BaseModel):
    """Normalized result of a successful swap."""

    provider: ProviderName
    signatures: list[str]
    input_mint: str
    output_mint: str
    input_amount: int
    received_amount: int
    price_impact_pct: Decimal | None = None
    attempts: list[ProviderAttempt] = Field(default_factory=list)

    @property
    def signature(self) -> str:
        """Signature of the final transaction."""
        return self.signatures[-1]


class CircuitBreakerState(BaseModel):
    """Snapshot of a provider's circuit breaker."""

    provider: ProviderName
    failure_count: int = Field(default=0, ge=0)
    last_failure_at: float | None = None
    is_open: bool = False
    half_open: bool = False


# =============================================================================
# Domain Events
# =============================================================================


class ExitEvent(BaseModel):
    """Emitted on every confirmed exit."""

    owner_id: str
    asset_address: str
    quantity: Decimal
    exit_reason: ExitReason
    received_amount: int
    provider: ProviderName
    signature: str
    rule_id: str | None = None
    entry_price: Decimal | None = None
    trigger_price: Decimal | None = None
    occurred_at: datetime = Field(default_factory=utcnow)


class ExitFailedEvent(BaseModel):
    """Emitted when an exit was attempted and failed; it will be retried."""

    owner_id: str
    asset_address: str
    exit_reason: ExitReason
    error: str
    trigger_price: Decimal | None = None
    occurred_at: datetime = Field(default_factory=utcnow)


class PositionAlert(BaseModel):
    """Emitted when a position needs operator attention."""

    owner_id: str
    asset_address: str
    level: AlertLevel
    error: str
    error_count: int
    occurred_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Loop Results
# =============================================================================


class TickResult(BaseModel):
    """Summary of one loop tick."""

    loop: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    checked: int = 0
    skipped: int = 0
    exits: int = 0
    exits_failed: int = 0
    admitted: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


# =============================================================================
# API Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    timestamp: datetime = Field(default_factory=utcnow)
    version: str = "0.1.0"


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str
    detail: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
