"""
Position Monitor Service

Re-prices monitored positions and sells them when a take-profit,
stop-loss or trailing-stop condition fires.
"""

from services.monitor.service import MonitorService, evaluate_exit

__all__ = ["MonitorService", "evaluate_exit"]
