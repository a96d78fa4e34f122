"""
Orchestrator Service

Main entry point that runs the monitor and discovery loops.
"""

from services.orchestrator.scheduler import PeriodicTask, Scheduler
from services.orchestrator.service import OrchestratorService

__all__ = ["OrchestratorService", "PeriodicTask", "Scheduler"]
