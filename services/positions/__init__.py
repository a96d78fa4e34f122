"""
Position Store

Monitored positions in memory and the persistent exited ledger.
"""

from services.positions.store import ExitedLedger, PositionStore

__all__ = ["ExitedLedger", "PositionStore"]
