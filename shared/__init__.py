"""
ExitPilot Shared Modules

This package contains shared configuration, clients, and models used across all services.
"""

from shared.config import Settings, get_settings
from shared.models import (
    BuyEvent,
    ExitConditions,
    ExitedLedgerEntry,
    ExitEvent,
    ExitReason,
    ExitRule,
    Position,
    PositionKey,
    ProviderName,
    SwapResult,
    TokenBalance,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Models
    "BuyEvent",
    "ExitConditions",
    "ExitedLedgerEntry",
    "ExitEvent",
    "ExitReason",
    "ExitRule",
    "Position",
    "PositionKey",
    "ProviderName",
    "SwapResult",
    "TokenBalance",
]
