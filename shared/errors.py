"""
Swap error taxonomy for ExitPilot.

Provider clients raise these; the executor decides from ``kind`` and
``retryable`` whether to retry within a provider or fall back.
"""

import re
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification of a swap failure."""

    INVALID_INPUT = "invalid_input"
    RATE_LIMITED = "rate_limited"
    VERSION_MISMATCH = "version_mismatch"
    NO_ROUTE_OR_LIQUIDITY = "no_route_or_liquidity"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ON_CHAIN_FAILURE = "on_chain_failure"
    TIMEOUT = "timeout"
    NETWORK = "network"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


class SwapError(Exception):
    """Base exception for swap failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        logs: list[str] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response
        self.logs = logs or []


class InvalidInputError(SwapError):
    kind = ErrorKind.INVALID_INPUT


class RateLimitedError(SwapError):
    kind = ErrorKind.RATE_LIMITED
    retryable = True

    def __init__(self, message: str, retry_after: float = 5.0, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class VersionMismatchError(SwapError):
    kind = ErrorKind.VERSION_MISMATCH


class NoRouteError(SwapError):
    kind = ErrorKind.NO_ROUTE_OR_LIQUIDITY


class InsufficientFundsError(SwapError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class OnChainFailureError(SwapError):
    kind = ErrorKind.ON_CHAIN_FAILURE


class ConfirmationTimeoutError(SwapError):
    kind = ErrorKind.TIMEOUT


class NetworkError(SwapError):
    kind = ErrorKind.NETWORK
    retryable = True


class BroadcastError(SwapError):
    """
    A transport failure while broadcasting.

    The transaction may still land, so it is never re-sent.
    """

    kind = ErrorKind.NETWORK


class CircuitOpenError(SwapError):
    kind = ErrorKind.CIRCUIT_OPEN


class AggregatedSwapError(SwapError):
    """Raised when every provider failed. Carries each provider's attempt."""

    def __init__(self, message: str, attempts: list[Any]):
        super().__init__(message)
        self.attempts = attempts


# =============================================================================
# Classification
# =============================================================================

_INSUFFICIENT_FUNDS_PATTERNS = (
    "0x1771",
    "insufficient lamports",
    "insufficient funds",
    "no record of a prior credit",
)
_NO_ROUTE_PATTERNS = (
    "no route",
    "could_not_find_any_route",
    "could not find any route",
    "route not found",
    "pool not found",
    "insufficient liquidity",
    "token_not_tradable",
)
_TIMEOUT_PATTERNS = ("blockhash not found", "block height exceeded")
_VERSION_PATTERNS = ("tx_version_error", "req_tx_version_error", "unsupported transaction version")

_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
MAX_SLIPPAGE_BPS = 5000


def classify_message(message: str, logs: list[str] | None = None) -> ErrorKind:
    """
    Classify a provider or RPC error message.

    Args:
        message: Error text returned by the provider or RPC node
        logs: Program logs from a simulated or landed transaction

    Returns:
        Matching ErrorKind, UNKNOWN if nothing matched
    """
    text = " ".join([message, *(logs or [])]).lower()
    if any(p in text for p in _INSUFFICIENT_FUNDS_PATTERNS):
        return ErrorKind.INSUFFICIENT_FUNDS
    if any(p in text for p in _NO_ROUTE_PATTERNS):
        return ErrorKind.NO_ROUTE_OR_LIQUIDITY
    if any(p in text for p in _TIMEOUT_PATTERNS):
        return ErrorKind.TIMEOUT
    if any(p in text for p in _VERSION_PATTERNS):
        return ErrorKind.VERSION_MISMATCH
    if "429" in text or "too many requests" in text or "rate limit" in text:
        return ErrorKind.RATE_LIMITED
    return ErrorKind.UNKNOWN


_KIND_TO_ERROR: dict[ErrorKind, type[SwapError]] = {
    ErrorKind.INVALID_INPUT: InvalidInputError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.VERSION_MISMATCH: VersionMismatchError,
    ErrorKind.NO_ROUTE_OR_LIQUIDITY: NoRouteError,
    ErrorKind.INSUFFICIENT_FUNDS: InsufficientFundsError,
    ErrorKind.ON_CHAIN_FAILURE: OnChainFailureError,
    ErrorKind.TIMEOUT: ConfirmationTimeoutError,
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.UNKNOWN: SwapError,
}


def error_from_message(
    message: str,
    status_code: int | None = None,
    response: dict | None = None,
    logs: list[str] | None = None,
) -> SwapError:
    """Build the SwapError subclass matching a message."""
    error_cls = _KIND_TO_ERROR[classify_message(message, logs)]
    return error_cls(message, status_code=status_code, response=response, logs=logs)


def is_valid_address(address: str) -> bool:
    """Check that a string looks like a base58 Solana address."""
    return bool(address) and bool(_ADDRESS_RE.match(address))


def validate_swap_request(
    input_mint: str,
    output_mint: str,
    amount: int,
    slippage_bps: int,
) -> None:
    """
    Validate swap parameters before any network call.

    Raises:
        InvalidInputError: If any parameter is invalid
    """
    if not is_valid_address(input_mint):
        raise InvalidInputError(f"Invalid input mint address: {input_mint!r}")
    if not is_valid_address(output_mint):
        raise InvalidInputError(f"Invalid output mint address: {output_mint!r}")
    if input_mint == output_mint:
        raise InvalidInputError("Input and output mints must differ")
    if amount <= 0:
        raise InvalidInputError(f"Amount must be positive, got {amount}")
    if not 0 <= slippage_bps <= MAX_SLIPPAGE_BPS:
        raise InvalidInputError(
            f"Slippage must be between 0 and {MAX_SLIPPAGE_BPS} bps, got {slippage_bps}"
        )
