"""
Unit tests for shared/jupiter_client.py
"""

import base64

import httpx
import pytest

from shared.errors import (
    BroadcastError,
    InsufficientFundsError,
    InvalidInputError,
    NetworkError,
    NoRouteError,
    RateLimitedError,
    SwapError,
    VersionMismatchError,
)
from shared.jupiter_client import JupiterClient
from shared.models import SOL_MINT, ProviderName, SwapQuote, TransactionVersion

TOKEN_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
UNSIGNED_TX = b"unsigned-transaction"


@pytest.fixture
def quote_response():
    """Raw Jupiter quote for a token -> SOL sell."""
    return {
        "inputMint": TOKEN_MINT,
        "outputMint": SOL_MINT,
        "inAmount": "1000000",
        "outAmount": "2500000",
        "slippageBps": 50,
        "priceImpactPct": "0.12",
        "routePlan": [{"swapInfo": {"label": "Raydium"}, "percent": 100}],
    }


@pytest.fixture
def swap_response():
    return {
        "swapTransaction": base64.b64encode(UNSIGNED_TX).decode(),
        "lastValidBlockHeight": 279_000_000,
    }


@pytest.fixture
def jupiter(mock_settings, mock_solana_client, mock_httpx_client):
    return JupiterClient(mock_solana_client, settings=mock_settings, http_client=mock_httpx_client)


class TestJupiterQuote:
    """Tests for quoting."""

    @pytest.mark.asyncio
    async def test_quote(self, jupiter, mock_httpx_client, response_factory, quote_response):
        """Test a quote is parsed and the request carries the sell parameters."""
        mock_httpx_client.request.return_value = response_factory(200, quote_response)

        quote = await jupiter.quote(TOKEN_MINT, SOL_MINT, 1_000_000, 50)

        assert quote.provider == ProviderName.JUPITER
        assert quote.in_amount == 1_000_000
        assert quote.out_amount == 2_500_000
        assert quote.tx_version == TransactionVersion.V0
        assert quote.raw == quote_response
        kwargs = mock_httpx_client.request.await_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["url"] == "https://jupiter.test/swap/v1/quote"
        assert kwargs["params"]["amount"] == "1000000"
        assert kwargs["params"]["slippageBps"] == 50
        assert "asLegacyTransaction" not in kwargs["params"]

    @pytest.mark.asyncio
    async def test_invalid_input_before_request(self, jupiter, mock_httpx_client):
        """Test bad parameters fail without a network call."""
        with pytest.raises(InvalidInputError):
            await jupiter.quote(TOKEN_MINT, TOKEN_MINT, 1_000_000, 50)

        mock_httpx_client.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_route(self, jupiter, mock_httpx_client, response_factory, quote_response):
        """Test a quote without a route is a no-route error."""
        quote_response["routePlan"] = []
        mock_httpx_client.request.return_value = response_factory(200, quote_response)

        with pytest.raises(NoRouteError):
            await jupiter.quote(TOKEN_MINT, SOL_MINT, 1_000_000, 50)

    @pytest.mark.asyncio
    async def test_no_route_error_body(self, jupiter, mock_httpx_client, response_factory):
        """Test a 400 naming no route is classified."""
        mock_httpx_client.request.return_value = response_factory(
            400, {"error": "Could not find any route", "errorCode": "COULD_NOT_FIND_ANY_ROUTE"}
        )

        with pytest.raises(NoRouteError) as exc_info:
            await jupiter.quote(TOKEN_MINT, SOL_MINT, 1_000_000, 50)
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_rate_limited(self, jupiter, mock_httpx_client, response_factory):
        """Test a 429 carries its retry-after."""
        mock_httpx_client.request.return_value = response_factory(429, None, headers={"retry-after": "3"})

        with pytest.raises(RateLimitedError) as exc_info:
            await jupiter.quote(TOKEN_MINT, SOL_MINT, 1_000_000, 50)
        assert exc_info.value.retry_after == 3.0

    @pytest.mark.asyncio
    async def test_server_error(self, jupiter, mock_httpx_client, response_factory):
        """Test a 5xx is a retryable network error."""
        mock_httpx_client.request.return_value = response_factory(503, {"error": "unavailable"})

        with pytest.raises(NetworkError):
            await jupiter.quote(TOKEN_MINT, SOL_MINT, 1_000_000, 50)

    @pytest.mark.asyncio
    async def test_transport_error(self, jupiter, mock_httpx_client):
        """Test a connection failure is a network error."""
        mock_httpx_client.request.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(NetworkError):
            await jupiter.quote(TOKEN_MINT, SOL_MINT, 1_000_000, 50)


class TestJupiterSubmit:
    """Tests for building and submitting."""

    @pytest.fixture
    def quote(self, quote_response):
        return SwapQuote(
            provider=ProviderName.JUPITER,
            input_mint=TOKEN_MINT,
            output_mint=SOL_MINT,
            in_amount=1_000_000,
            out_amount=2_500_000,
            slippage_bps=50,
            raw=quote_response,
        )

    @pytest.mark.asyncio
    async def test_build_and_submit(self, jupiter, quote, mock_httpx_client, mock_wallet, response_factory, swap_response):
        """Test the swap transaction is signed and submitted by the wallet."""
        mock_httpx_client.request.return_value = response_factory(200, swap_response)

        submission = await jupiter.build_and_submit(quote, mock_wallet, is_sell=True)

        mock_wallet.sign_and_submit.assert_awaited_once_with(UNSIGNED_TX)
        assert submission.signatures == ["5" * 88]
        assert submission.expected_out_amount == 2_500_000
        assert submission.last_valid_block_height == 279_000_000
        payload = mock_httpx_client.request.await_args.kwargs["json"]
        assert payload["userPublicKey"] == mock_wallet.address
        assert payload["wrapAndUnwrapSol"] is True
        assert payload["prioritizationFeeLamports"] == "auto"

    @pytest.mark.asyncio
    async def test_version_mismatch_retries_legacy(
        self, jupiter, quote, mock_httpx_client, mock_wallet, response_factory, quote_response, swap_response
    ):
        """Test a version rejection re-quotes once as a legacy transaction."""
        mock_httpx_client.request.side_effect = [
            response_factory(400, {"error": "TX_VERSION_ERROR"}),
            response_factory(200, quote_response),
            response_factory(200, swap_response),
        ]

        submission = await jupiter.build_and_submit(quote, mock_wallet)

        assert submission.signatures == ["5" * 88]
        requote = mock_httpx_client.request.await_args_list[1].kwargs
        assert requote["params"]["asLegacyTransaction"] == "true"
        final = mock_httpx_client.request.await_args_list[2].kwargs
        assert final["json"]["asLegacyTransaction"] is True

    @pytest.mark.asyncio
    async def test_legacy_mismatch_not_retried(self, jupiter, quote, mock_httpx_client, mock_wallet, response_factory):
        """Test a legacy quote rejected for its version fails."""
        legacy = quote.model_copy(update={"tx_version": TransactionVersion.LEGACY})
        mock_httpx_client.request.return_value = response_factory(400, {"error": "TX_VERSION_ERROR"})

        with pytest.raises(VersionMismatchError):
            await jupiter.build_and_submit(legacy, mock_wallet)

    @pytest.mark.asyncio
    async def test_missing_transaction(self, jupiter, quote, mock_httpx_client, mock_wallet, response_factory):
        """Test a swap response without a transaction is an error."""
        mock_httpx_client.request.return_value = response_factory(200, {})

        with pytest.raises(SwapError):
            await jupiter.build_and_submit(quote, mock_wallet)
        mock_wallet.sign_and_submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submit_error_propagates(self, jupiter, quote, mock_httpx_client, mock_wallet, response_factory, swap_response):
        """Test a classified broadcast failure reaches the caller."""
        mock_httpx_client.request.return_value = response_factory(200, swap_response)
        mock_wallet.sign_and_submit.side_effect = InsufficientFundsError("insufficient lamports")

        with pytest.raises(InsufficientFundsError):
            await jupiter.build_and_submit(quote, mock_wallet)

    @pytest.mark.asyncio
    async def test_transport_failure_on_broadcast(self, jupiter, quote, mock_httpx_client, mock_wallet, response_factory, swap_response):
        """Test a transport failure while sending is a non-retryable broadcast error."""
        mock_httpx_client.request.return_value = response_factory(200, swap_response)
        mock_wallet.sign_and_submit.side_effect = NetworkError("ReadTimeout")

        with pytest.raises(BroadcastError) as exc_info:
            await jupiter.build_and_submit(quote, mock_wallet)

        assert exc_info.value.retryable is False
        assert exc_info.value.kind.value == "network"
        mock_wallet.sign_and_submit.assert_awaited_once()


class TestJupiterLifecycle:
    """Tests for client lifecycle."""

    @pytest.mark.asyncio
    async def test_close(self, jupiter, mock_httpx_client):
        """Test closing the HTTP client."""
        await jupiter.close()

        mock_httpx_client.aclose.assert_awaited_once()
        assert jupiter._client is None

    @pytest.mark.asyncio
    async def test_confirm_delegates_to_rpc(self, jupiter, mock_solana_client):
        """Test confirmation goes through the RPC client."""
        submission = object()

        await jupiter.confirm(submission)

        mock_solana_client.confirm_swap.assert_awaited_once_with(submission)
