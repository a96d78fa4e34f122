"""
Common base for swap execution providers.

Each provider quotes, builds and submits, and confirms a swap. Subclasses
supply the provider-specific HTTP calls; confirmation is shared and goes
through the Solana RPC client.
"""

from abc import ABC, abstractmethod
from typing import Any, NoReturn

import httpx
import structlog

from shared.config import Settings, get_settings
from shared.errors import (
    BroadcastError,
    NetworkError,
    RateLimitedError,
    SwapError,
    error_from_message,
    validate_swap_request,
)
from shared.models import Confirmation, ProviderName, SwapQuote, SwapSubmission
from shared.solana_client import SolanaClient
from shared.wallet import WalletHandle

logger = structlog.get_logger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 5.0


class SwapProvider(ABC):
    """
    Uniform interface over a swap execution provider.

    Adding a provider means subclassing this and appending it to the
    executor's provider list.
    """

    name: ProviderName
    base_url: str = ""
    timeout: float = 30.0

    def __init__(
        self,
        rpc: SolanaClient,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize provider.

        Args:
            rpc: Solana RPC client used for confirmation
            settings: Settings instance. If None, loads from environment.
            http_client: Optional pre-built HTTP client
        """
        self.settings = settings or get_settings()
        self.rpc = rpc
        self._client = http_client

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SwapProvider":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Contract
    # =========================================================================

    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapQuote:
        """
        Quote a swap.

        Args:
            input_mint: Mint to sell
            output_mint: Mint to buy
            amount: Input amount in raw units
            slippage_bps: Slippage tolerance in basis points

        Returns:
            SwapQuote

        Raises:
            InvalidInputError: Before any network call, on bad parameters
            SwapError: Classified provider failure
        """
        validate_swap_request(input_mint, output_mint, amount, slippage_bps)
        return await self._fetch_quote(input_mint, output_mint, amount, slippage_bps)

    @abstractmethod
    async def _fetch_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapQuote:
        """Provider-specific quote request."""

    @abstractmethod
    async def build_and_submit(
        self,
        quote: SwapQuote,
        wallet: WalletHandle,
        is_sell: bool = False,
    ) -> SwapSubmission:
        """Build the swap transaction(s) for a quote, sign and broadcast them."""

    async def confirm(self, submission: SwapSubmission) -> Confirmation:
        """
        Confirm a submission on-chain.

        Raises:
            OnChainFailureError: Landed with an error or without a balance change
            ConfirmationTimeoutError: Not observed within the validity window
        """
        return await self.rpc.confirm_swap(submission)

    async def _broadcast(self, wallet: WalletHandle, transaction: bytes) -> str:
        """
        Sign and send one transaction through the wallet.

        A retryable failure here is raised as BroadcastError so the
        executor falls back instead of sending the swap again.
        """
        try:
            return await wallet.sign_and_submit(transaction)
        except SwapError as e:
            if not e.retryable:
                raise
            logger.warning("provider_broadcast_uncertain", provider=self.name.value, error=str(e))
            raise BroadcastError(
                f"{self.name.value}: broadcast failed: {str(e)}",
                status_code=e.status_code,
                response=e.response,
                logs=e.logs,
            ) from e

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        base_url: str | None = None,
    ) -> dict[str, Any]:
        """
        Make an HTTP request to the provider API.

        Raises:
            RateLimitedError: On HTTP 429
            NetworkError: On transport failures and 5xx responses
            SwapError: Classified from the error body otherwise
        """
        url = f"{base_url or self.base_url}{path}"

        logger.debug("provider_request", provider=self.name.value, method=method, path=path)

        try:
            response = await self.client.request(method=method, url=url, params=params, json=json_data)
        except httpx.RequestError as e:
            logger.error("provider_request_error", provider=self.name.value, error=str(e))
            raise NetworkError(f"{self.name.value} request failed: {str(e)}")

        if response.status_code == 429:
            raise RateLimitedError(
                f"{self.name.value} rate limited",
                retry_after=self._retry_after(response),
                status_code=429,
            )

        data = self._json(response)

        if response.status_code >= 500:
            raise NetworkError(
                f"{self.name.value} server error: {response.status_code}",
                status_code=response.status_code,
                response=data,
            )
        if response.status_code >= 400:
            message = self._error_message(data) or f"API request failed: {response.status_code}"
            raise error_from_message(message, status_code=response.status_code, response=data)

        return data

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"error": response.text}
        return data if isinstance(data, dict) else {"data": data}

    @staticmethod
    def _error_message(data: dict[str, Any]) -> str:
        for key in ("error", "msg", "message", "errorCode"):
            value = data.get(key)
            if value:
                return str(value)
        return ""

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        value = response.headers.get("retry-after")
        try:
            return float(value) if value is not None else DEFAULT_RETRY_AFTER_SECONDS
        except ValueError:
            return DEFAULT_RETRY_AFTER_SECONDS

    def _raise_unexpected(self, message: str, data: dict[str, Any] | None = None) -> NoReturn:
        logger.warning("provider_unexpected_response", provider=self.name.value, message=message)
        raise SwapError(f"{self.name.value}: {message}", response=data)
