"""
Jupiter aggregator client for ExitPilot.

Primary swap provider. Uses the Jupiter swap API for:
- Route quotes
- Serialized swap transactions with dynamic fees and slippage
"""

import base64
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog

from shared.errors import NoRouteError, VersionMismatchError
from shared.models import (
    ProviderName,
    SwapQuote,
    SwapSubmission,
    TransactionVersion,
)
from shared.swap_provider import SwapProvider
from shared.wallet import WalletHandle

logger = structlog.get_logger(__name__)


class JupiterClient(SwapProvider):
    """
    Async client for the Jupiter swap API.

    Quotes are requested as v0 transactions first; a provider or node
    rejecting the format triggers one legacy-format retry.
    """

    name = ProviderName.JUPITER

    QUOTE_PATH = "/swap/v1/quote"
    SWAP_PATH = "/swap/v1/swap"

    @property
    def base_url(self) -> str:  # type: ignore[override]
        return self.settings.jupiter.base_url.rstrip("/")

    @property
    def timeout(self) -> float:  # type: ignore[override]
        return self.settings.jupiter.request_timeout_seconds

    async def _fetch_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        tx_version: TransactionVersion = TransactionVersion.V0,
    ) -> SwapQuote:
        params: dict[str, Any] = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
            "restrictIntermediateTokens": str(
                self.settings.jupiter.restrict_intermediate_tokens
            ).lower(),
        }
        if tx_version == TransactionVersion.LEGACY:
            params["asLegacyTransaction"] = "true"

        data = await self._request("GET", self.QUOTE_PATH, params=params)

        if not data.get("outAmount") or not data.get("routePlan"):
            raise NoRouteError(
                f"jupiter: no route for {input_mint} -> {output_mint}",
                response=data,
            )

        quote = self._parse_quote(data, slippage_bps, tx_version)
        logger.info(
            "jupiter_quote",
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            price_impact_pct=str(quote.price_impact_pct),
        )
        return quote

    async def build_and_submit(
        self,
        quote: SwapQuote,
        wallet: WalletHandle,
        is_sell: bool = False,
    ) -> SwapSubmission:
        """
        Build, sign and broadcast the swap transaction for a quote.

        Args:
            quote: Quote from this provider
            wallet: Signing wallet
            is_sell: Unused; Jupiter resolves token accounts itself

        Returns:
            SwapSubmission with one signature
        """
        try:
            return await self._submit(quote, wallet)
        except VersionMismatchError as e:
            if quote.tx_version == TransactionVersion.LEGACY:
                raise
            logger.warning("jupiter_retrying_legacy", error=str(e))
            legacy_quote = await self._fetch_quote(
                quote.input_mint,
                quote.output_mint,
                quote.in_amount,
                quote.slippage_bps,
                tx_version=TransactionVersion.LEGACY,
            )
            return await self._submit(legacy_quote, wallet)

    async def _submit(self, quote: SwapQuote, wallet: WalletHandle) -> SwapSubmission:
        payload: dict[str, Any] = {
            "quoteResponse": quote.raw,
            "userPublicKey": wallet.address,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "dynamicSlippage": self.settings.jupiter.dynamic_slippage,
            "prioritizationFeeLamports": "auto",
        }
        if quote.tx_version == TransactionVersion.LEGACY:
            payload["asLegacyTransaction"] = True

        data = await self._request("POST", self.SWAP_PATH, json_data=payload)

        swap_transaction = data.get("swapTransaction")
        if not swap_transaction:
            self._raise_unexpected("swap response missing transaction", data)

        signature = await self._broadcast(wallet, base64.b64decode(swap_transaction))

        logger.info("jupiter_swap_submitted", signature=signature, wallet=wallet.address)
        return SwapSubmission(
            provider=self.name,
            signatures=[signature],
            owner=wallet.address,
            input_mint=quote.input_mint,
            output_mint=quote.output_mint,
            expected_out_amount=quote.out_amount,
            last_valid_block_height=data.get("lastValidBlockHeight"),
        )

    def _parse_quote(
        self,
        data: dict[str, Any],
        slippage_bps: int,
        tx_version: TransactionVersion,
    ) -> SwapQuote:
        """Parse a Jupiter quote response."""
        try:
            price_impact = Decimal(str(data.get("priceImpactPct", "0")))
        except InvalidOperation:
            price_impact = None

        return SwapQuote(
            provider=self.name,
            input_mint=data["inputMint"],
            output_mint=data["outputMint"],
            in_amount=int(data["inAmount"]),
            out_amount=int(data["outAmount"]),
            slippage_bps=int(data.get("slippageBps", slippage_bps)),
            price_impact_pct=price_impact,
            tx_version=tx_version,
            raw=data,
        )
