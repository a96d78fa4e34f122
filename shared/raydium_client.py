"""
Raydium trade API client for ExitPilot.

Secondary swap provider. Uses the Raydium transaction API for:
- swap-base-in quotes, negotiating the transaction version
- Priority fee estimates
- Serialized swap transactions (possibly several per swap)
"""

import base64
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog

from shared.errors import (
    ErrorKind,
    InsufficientFundsError,
    VersionMismatchError,
    classify_message,
    error_from_message,
)
from shared.models import (
    SOL_MINT,
    ProviderName,
    SwapQuote,
    SwapSubmission,
    TransactionVersion,
)
from shared.swap_provider import SwapProvider
from shared.wallet import WalletHandle

logger = structlog.get_logger(__name__)

# Micro-lamports per compute unit when the fee endpoint is unavailable
DEFAULT_PRIORITY_FEES = {"vh": 1_000_000, "h": 500_000, "m": 100_000}

INPUT_ACCOUNT_ERROR = "REQ_INPUT_ACCOUT_ERROR"


class RaydiumClient(SwapProvider):
    """
    Async client for the Raydium trade API.

    The compute endpoint rejects some pairs unless a transaction version
    is given, so quoting walks through no version, V0, then LEGACY.
    """

    name = ProviderName.RAYDIUM

    QUOTE_PATH = "/compute/swap-base-in"
    SWAP_PATH = "/transaction/swap-base-in"
    FEE_PATH = "/main/auto-fee"

    QUOTE_VERSIONS: tuple[TransactionVersion | None, ...] = (
        None,
        TransactionVersion.V0,
        TransactionVersion.LEGACY,
    )

    @property
    def base_url(self) -> str:  # type: ignore[override]
        return self.settings.raydium.base_url.rstrip("/")

    @property
    def timeout(self) -> float:  # type: ignore[override]
        return self.settings.raydium.request_timeout_seconds

    async def _fetch_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        versions: tuple[TransactionVersion | None, ...] | None = None,
    ) -> SwapQuote:
        last_message = ""
        for version in versions or self.QUOTE_VERSIONS:
            params: dict[str, Any] = {
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(amount),
                "slippageBps": slippage_bps,
            }
            if version is not None:
                params["txVersion"] = version.value

            try:
                data = await self._request("GET", self.QUOTE_PATH, params=params)
            except VersionMismatchError as e:
                last_message = str(e)
                continue

            if data.get("success") and data.get("data"):
                quote = self._parse_quote(data, input_mint, output_mint, amount, slippage_bps, version)
                logger.info(
                    "raydium_quote",
                    input_mint=input_mint,
                    output_mint=output_mint,
                    out_amount=quote.out_amount,
                    tx_version=quote.tx_version.value,
                )
                return quote

            last_message = self._error_message(data) or "unknown quote error"
            if classify_message(last_message) != ErrorKind.VERSION_MISMATCH:
                raise error_from_message(f"raydium: {last_message}", response=data)
            logger.debug("raydium_quote_version_rejected", tx_version=version, error=last_message)

        raise VersionMismatchError(f"raydium: no transaction version accepted ({last_message})")

    async def get_priority_fee(self) -> int:
        """
        Get the compute unit price for the configured priority level.

        Falls back to built-in defaults when the fee endpoint fails.
        """
        level = self.settings.raydium.priority_level
        try:
            data = await self._request(
                "GET", self.FEE_PATH, base_url=self.settings.raydium.api_url.rstrip("/")
            )
            return int(data["data"]["default"][level])
        except Exception as e:
            logger.warning("raydium_priority_fee_fallback", level=level, error=str(e))
            return DEFAULT_PRIORITY_FEES[level]

    async def build_and_submit(
        self,
        quote: SwapQuote,
        wallet: WalletHandle,
        is_sell: bool = False,
    ) -> SwapSubmission:
        """
        Build, sign and broadcast every transaction of a Raydium swap.

        Args:
            quote: Quote from this provider
            wallet: Signing wallet
            is_sell: Locate the wallet's token account to sell from

        Returns:
            SwapSubmission with one signature per transaction
        """
        try:
            transactions = await self._build_transactions(quote, wallet, is_sell)
        except VersionMismatchError as e:
            alternate = (
                TransactionVersion.LEGACY
                if quote.tx_version == TransactionVersion.V0
                else TransactionVersion.V0
            )
            logger.warning("raydium_retrying_version", tx_version=alternate.value, error=str(e))
            quote = await self._fetch_quote(
                quote.input_mint,
                quote.output_mint,
                quote.in_amount,
                quote.slippage_bps,
                versions=(alternate,),
            )
            transactions = await self._build_transactions(quote, wallet, is_sell)

        signatures = []
        for index, transaction in enumerate(transactions):
            signature = await self._broadcast(wallet, transaction)
            logger.info(
                "raydium_transaction_submitted",
                signature=signature,
                index=index,
                total=len(transactions),
            )
            signatures.append(signature)

        return SwapSubmission(
            provider=self.name,
            signatures=signatures,
            owner=wallet.address,
            input_mint=quote.input_mint,
            output_mint=quote.output_mint,
            expected_out_amount=quote.out_amount,
        )

    async def _build_transactions(
        self,
        quote: SwapQuote,
        wallet: WalletHandle,
        is_sell: bool,
    ) -> list[bytes]:
        payload: dict[str, Any] = {
            "computeUnitPriceMicroLamports": str(await self.get_priority_fee()),
            "swapResponse": quote.raw,
            "txVersion": quote.tx_version.value,
            "wallet": wallet.address,
            "wrapSol": quote.input_mint == SOL_MINT,
            "unwrapSol": quote.output_mint == SOL_MINT,
        }

        if is_sell and quote.input_mint != SOL_MINT:
            input_account = await self.rpc.find_token_account(wallet.address, quote.input_mint)
            if input_account is None:
                raise InsufficientFundsError(
                    f"raydium: wallet {wallet.address} holds no {quote.input_mint} account"
                )
            payload["inputAccount"] = input_account
        if quote.output_mint != SOL_MINT:
            output_account = await self.rpc.find_token_account(wallet.address, quote.output_mint)
            if output_account is not None:
                payload["outputAccount"] = output_account

        data = await self._request("POST", self.SWAP_PATH, json_data=payload)

        if not data.get("success") and INPUT_ACCOUNT_ERROR in self._error_message(data):
            logger.warning("raydium_retrying_without_accounts")
            payload.pop("inputAccount", None)
            payload.pop("outputAccount", None)
            data = await self._request("POST", self.SWAP_PATH, json_data=payload)

        if not data.get("success"):
            message = self._error_message(data) or "unknown transaction error"
            raise error_from_message(f"raydium: {message}", response=data)

        items = data.get("data") or []
        transactions = [base64.b64decode(item["transaction"]) for item in items if item.get("transaction")]
        if not transactions:
            self._raise_unexpected("swap response contained no transactions", data)
        return transactions

    def _parse_quote(
        self,
        data: dict[str, Any],
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        version: TransactionVersion | None,
    ) -> SwapQuote:
        """Parse a Raydium compute response. The whole response is sent back when building."""
        body = data["data"]
        try:
            price_impact = Decimal(str(body.get("priceImpactPct", "0")))
        except InvalidOperation:
            price_impact = None

        return SwapQuote(
            provider=self.name,
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=int(body.get("inputAmount", amount)),
            out_amount=int(body["outputAmount"]),
            slippage_bps=int(body.get("slippageBps", slippage_bps)),
            price_impact_pct=price_impact,
            tx_version=version or TransactionVersion.V0,
            raw=data,
        )
