"""
Swap executor service implementation.

Runs a swap through the configured providers in order, falling back to
the next one when a provider fails. Each provider sits behind its own
rate limiter and circuit breaker.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from services.executor.circuit_breaker import CircuitBreaker, Clock, RateLimiter
from shared.config import Settings, get_settings
from shared.errors import (
    AggregatedSwapError,
    ConfirmationTimeoutError,
    ErrorKind,
    RateLimitedError,
    SwapError,
    validate_swap_request,
)
from shared.jupiter_client import JupiterClient
from shared.models import (
    CircuitBreakerState,
    Confirmation,
    ProviderAttempt,
    ProviderName,
    SwapQuote,
    SwapResult,
    SwapSubmission,
)
from shared.raydium_client import RaydiumClient
from shared.solana_client import SolanaClient
from shared.swap_provider import SwapProvider
from shared.wallet import WalletHandle

logger = structlog.get_logger(__name__)

PROVIDER_CLASSES: dict[ProviderName, type[SwapProvider]] = {
    ProviderName.JUPITER: JupiterClient,
    ProviderName.RAYDIUM: RaydiumClient,
}


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, SwapError) and error.retryable


class ExecutorService:
    """
    Fallback swap executor.

    Providers are tried in a fixed order. The first success is returned,
    tagged with the provider that produced it; if every provider fails the
    attempts are aggregated into one AggregatedSwapError.
    """

    def __init__(
        self,
        providers: list[SwapProvider],
        settings: Settings | None = None,
        clock: Clock = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize executor.

        Args:
            providers: Providers in the order they are tried
            settings: Settings instance. If None, loads from environment.
            clock: Monotonic clock for breakers and limiters
            sleep: Sleep used for rate limiting and retry backoff
        """
        if not providers:
            raise ValueError("at least one provider is required")

        self.settings = settings or get_settings()
        self.providers = providers
        self._sleep = sleep
        config = self.settings.dispatcher
        self._breakers = {
            p.name: CircuitBreaker(
                p.name,
                threshold=config.circuit_breaker_threshold,
                timeout=config.circuit_breaker_timeout_seconds,
                clock=clock,
            )
            for p in providers
        }
        self._limiters = {
            p.name: RateLimiter(config.min_call_interval_seconds, clock=clock, sleep=sleep)
            for p in providers
        }

    @property
    def active_providers(self) -> list[SwapProvider]:
        """Providers used for a swap: all of them, or only the primary with fallback off."""
        if self.settings.dispatcher.enable_fallback:
            return self.providers
        return self.providers[:1]

    async def execute_swap(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        wallet: WalletHandle,
        slippage_bps: int | None = None,
        is_sell: bool = False,
    ) -> SwapResult:
        """
        Execute a swap with provider fallback.

        Args:
            input_mint: Mint to sell
            output_mint: Mint to buy
            amount: Input amount in raw units
            wallet: Signing wallet
            slippage_bps: Slippage tolerance; configured default if None
            is_sell: Selling a held token (affects account preparation only)

        Returns:
            SwapResult from the first provider that succeeded

        Raises:
            InvalidInputError: Bad parameters, before any provider call
            AggregatedSwapError: Every provider failed or was skipped
        """
        if slippage_bps is None:
            slippage_bps = self.settings.dispatcher.default_slippage_bps
        validate_swap_request(input_mint, output_mint, amount, slippage_bps)

        attempts: list[ProviderAttempt] = []

        for provider in self.active_providers:
            attempt = ProviderAttempt(
                provider=provider.name,
                input_mint=input_mint,
                output_mint=output_mint,
                amount=amount,
                slippage_bps=slippage_bps,
            )
            attempts.append(attempt)
            breaker = self._breakers[provider.name]

            if not breaker.allow_request():
                attempt.skipped = True
                attempt.error_kind = ErrorKind.CIRCUIT_OPEN.value
                attempt.error_message = "circuit breaker open"
                logger.warning("provider_skipped", provider=provider.name.value, reason="circuit_open")
                continue

            try:
                quote, submission, confirmation = await self._run_provider(
                    provider, attempt, input_mint, output_mint, amount, slippage_bps, wallet, is_sell
                )
            except SwapError as e:
                breaker.record_failure()
                attempt.error_kind = e.kind.value
                attempt.error_message = str(e)
                logger.warning(
                    "provider_failed",
                    provider=provider.name.value,
                    kind=e.kind.value,
                    error=str(e),
                    attempts=attempt.attempts,
                    logs=e.logs[-5:],
                )
                continue
            except Exception as e:
                breaker.record_failure()
                attempt.error_kind = ErrorKind.UNKNOWN.value
                attempt.error_message = f"{type(e).__name__}: {str(e)}"
                logger.error(
                    "provider_unexpected_error",
                    provider=provider.name.value,
                    error=attempt.error_message,
                )
                continue
            except BaseException:
                # Cancelled mid-call: no outcome to record
                breaker.release_trial()
                raise

            breaker.record_success()
            received = confirmation.output_delta if confirmation.output_delta > 0 else submission.expected_out_amount
            attempt.success = True
            attempt.signatures = submission.signatures
            attempt.received_amount = received

            logger.info(
                "swap_executed",
                provider=provider.name.value,
                input_mint=input_mint,
                output_mint=output_mint,
                amount=amount,
                received=received,
                signatures=submission.signatures,
            )
            return SwapResult(
                provider=provider.name,
                signatures=submission.signatures,
                input_mint=input_mint,
                output_mint=output_mint,
                input_amount=quote.in_amount,
                received_amount=received,
                price_impact_pct=quote.price_impact_pct,
                attempts=attempts,
            )

        message = self.format_failure(attempts)
        logger.error("swap_failed_all_providers", input_mint=input_mint, error=message)
        raise AggregatedSwapError(message, attempts)

    async def _run_provider(
        self,
        provider: SwapProvider,
        attempt: ProviderAttempt,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        wallet: WalletHandle,
        is_sell: bool,
    ) -> tuple[SwapQuote, SwapSubmission, Confirmation]:
        """
        One provider: quote and submit with retries, then confirm once.

        Only the pre-broadcast steps are retried; a broadcast transaction
        is never re-sent.
        """
        config = self.settings.dispatcher
        limiter = self._limiters[provider.name]

        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.max_attempts),
            wait=self._backoff,
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            reraise=True,
        )
        async for try_ in retrying:
            with try_:
                attempt.attempts = try_.retry_state.attempt_number
                await limiter.acquire()
                quote = await provider.quote(input_mint, output_mint, amount, slippage_bps)
                submission = await provider.build_and_submit(quote, wallet, is_sell)

        confirm_timeout = (
            self.settings.solana.confirm_timeout_seconds
            + self.settings.solana.request_timeout_seconds
        )
        try:
            confirmation = await asyncio.wait_for(provider.confirm(submission), timeout=confirm_timeout)
        except asyncio.TimeoutError:
            raise ConfirmationTimeoutError(
                f"{provider.name.value}: confirmation of {submission.signatures} timed out"
            )
        return quote, submission, confirmation

    def _backoff(self, retry_state: RetryCallState) -> float:
        delay = self.settings.dispatcher.backoff_base_seconds * 2 ** (retry_state.attempt_number - 1)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitedError):
            delay = max(delay, error.retry_after)
        logger.info("provider_retry_backoff", attempt=retry_state.attempt_number, delay=delay)
        return delay

    @staticmethod
    def format_failure(attempts: list[ProviderAttempt]) -> str:
        """One readable line summarising every provider attempt."""
        parts = []
        for attempt in attempts:
            detail = f"{attempt.provider.value}: {attempt.error_kind}"
            if attempt.error_message:
                detail += f" ({attempt.error_message})"
            if attempt.attempts > 1:
                detail += f" after {attempt.attempts} attempts"
            parts.append(detail)
        return "All providers failed: " + "; ".join(parts)

    # =========================================================================
    # Operator Controls
    # =========================================================================

    def get_provider_status(self) -> list[CircuitBreakerState]:
        """Circuit breaker state of every provider, in order."""
        return [self._breakers[p.name].state() for p in self.providers]

    def reset_provider(self, name: ProviderName) -> CircuitBreakerState:
        """
        Close a provider's circuit breaker.

        Raises:
            KeyError: If the provider is not configured
        """
        breaker = self._breakers[name]
        breaker.reset()
        logger.info("provider_reset", provider=name.value)
        return breaker.state()

    async def close(self) -> None:
        """Close every provider's HTTP client."""
        for provider in self.providers:
            await provider.close()

    def summary(self) -> dict[str, Any]:
        return {
            "providers": [p.name.value for p in self.providers],
            "fallback_enabled": self.settings.dispatcher.enable_fallback,
            "open_circuits": [
                name.value for name, breaker in self._breakers.items() if breaker.is_open
            ],
        }


def build_providers(rpc: SolanaClient, settings: Settings | None = None) -> list[SwapProvider]:
    """
    Instantiate providers in the configured order.

    Raises:
        ValueError: On an unknown provider name
    """
    settings = settings or get_settings()
    providers: list[SwapProvider] = []
    for name in settings.dispatcher.provider_order:
        try:
            provider_cls = PROVIDER_CLASSES[ProviderName(name)]
        except ValueError:
            raise ValueError(f"Unknown swap provider: {name}")
        providers.append(provider_cls(rpc, settings=settings))
    return providers


# Factory function
def get_executor_service(rpc: SolanaClient | None = None) -> ExecutorService:
    """Create and return an ExecutorService with the configured providers."""
    settings = get_settings()
    rpc = rpc or SolanaClient(settings)
    return ExecutorService(build_providers(rpc, settings), settings=settings)
