"""
Swap Executor Service

Executes swaps through Jupiter with Raydium as fallback, behind per-provider
rate limiting and circuit breakers.
"""

from services.executor.circuit_breaker import CircuitBreaker, RateLimiter
from services.executor.service import ExecutorService

__all__ = ["CircuitBreaker", "ExecutorService", "RateLimiter"]
