"""
Discovery Service

Brings newly acquired tokens under monitoring from buy events and
wallet balances.
"""

from services.discovery.service import DiscoveryService

__all__ = ["DiscoveryService"]
