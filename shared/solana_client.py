"""
Solana RPC client for ExitPilot.

Wraps solana-py's AsyncClient for:
- Broadcasting signed transactions
- Confirming signatures within the blockhash validity window
- Verifying the balance change a landed transaction produced
- Reading wallet token balances
"""

import asyncio
import time
from typing import Any

import structlog
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

from shared.config import Settings, get_settings
from shared.errors import (
    ConfirmationTimeoutError,
    NetworkError,
    OnChainFailureError,
    classify_message,
    error_from_message,
)
from shared.models import SOL_MINT, Confirmation, SwapSubmission, TokenBalance

logger = structlog.get_logger(__name__)

_CONFIRMED_STATUSES = {"confirmed", "finalized"}


def _status_name(status: Any) -> str:
    """Normalize a confirmation status enum or string to lower case."""
    if status is None:
        return ""
    text = str(status)
    return text.rsplit(".", 1)[-1].lower()


class SolanaClient:
    """
    Async client for a Solana JSON-RPC node.

    Exposes only the calls the swap providers and discovery loop need.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: AsyncClient | None = None,
    ):
        """
        Initialize Solana client.

        Args:
            settings: Settings instance. If None, loads from environment.
            client: Optional pre-built AsyncClient
        """
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> AsyncClient:
        """Get RPC client, creating if needed."""
        if self._client is None:
            self._client = AsyncClient(
                self.settings.solana.rpc_url,
                commitment=Commitment(self.settings.solana.commitment),
                timeout=self.settings.solana.request_timeout_seconds,
            )
        return self._client

    async def close(self) -> None:
        """Close the RPC client."""
        if self._client:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> "SolanaClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Transactions
    # =========================================================================

    async def send_raw_transaction(self, transaction: bytes) -> str:
        """
        Broadcast a signed transaction.

        Args:
            transaction: Serialized signed transaction

        Returns:
            Base58 transaction signature

        Raises:
            SwapError: Classified from the preflight failure
            NetworkError: If the node could not be reached
        """
        try:
            resp = await self.client.send_raw_transaction(
                transaction,
                opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=3),
            )
        except RPCException as e:
            logs = self._extract_logs(e)
            logger.warning("send_transaction_rejected", error=str(e), logs=logs[-5:])
            raise error_from_message(str(e), logs=logs)
        except SolanaRpcException as e:
            logger.error("send_transaction_network_error", error=str(e))
            raise NetworkError(f"RPC request failed: {str(e)}")

        signature = str(resp.value)
        logger.info("transaction_sent", signature=signature)
        return signature

    async def get_block_height(self) -> int:
        """Get the current block height."""
        try:
            resp = await self.client.get_block_height(Confirmed)
            return int(resp.value)
        except SolanaRpcException as e:
            raise NetworkError(f"RPC request failed: {str(e)}")

    async def get_signature_status(self, signature: str) -> Any:
        """
        Get the status of a single signature.

        Returns:
            The node's status object, or None if not yet seen
        """
        try:
            resp = await self.client.get_signature_statuses(
                [Signature.from_string(signature)],
                search_transaction_history=False,
            )
        except SolanaRpcException as e:
            raise NetworkError(f"RPC request failed: {str(e)}")
        return resp.value[0] if resp.value else None

    async def get_transaction(self, signature: str) -> Any:
        """
        Fetch a landed transaction with its status meta.

        Returns:
            The transaction object, or None if the node does not have it
        """
        try:
            resp = await self.client.get_transaction(
                Signature.from_string(signature),
                encoding="json",
                commitment=Confirmed,
                max_supported_transaction_version=0,
            )
        except SolanaRpcException as e:
            raise NetworkError(f"RPC request failed: {str(e)}")
        return resp.value

    async def wait_for_signature(
        self,
        signature: str,
        last_valid_block_height: int | None = None,
    ) -> int | None:
        """
        Poll until a signature reaches confirmed commitment.

        Bounded by the blockhash validity window when known, and always
        by the configured confirmation timeout.

        Returns:
            Slot the transaction landed in

        Raises:
            OnChainFailureError: If the transaction landed with an error
            ConfirmationTimeoutError: If it was not observed in time
        """
        poll_interval = self.settings.solana.confirm_poll_interval_seconds
        deadline = time.monotonic() + self.settings.solana.confirm_timeout_seconds

        while True:
            try:
                status = await self.get_signature_status(signature)
                if status is not None:
                    if status.err is not None:
                        raise OnChainFailureError(f"Transaction {signature} failed: {status.err}")
                    if _status_name(status.confirmation_status) in _CONFIRMED_STATUSES:
                        return status.slot

                if last_valid_block_height is not None:
                    block_height = await self.get_block_height()
                    if block_height > last_valid_block_height:
                        raise ConfirmationTimeoutError(
                            f"Transaction {signature} expired: block height exceeded"
                        )
            except NetworkError as e:
                # The transaction may still land; keep polling until the deadline
                logger.warning("confirm_poll_error", signature=signature, error=str(e))

            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(
                    f"Transaction {signature} not confirmed within "
                    f"{self.settings.solana.confirm_timeout_seconds}s"
                )
            await asyncio.sleep(poll_interval)

    async def confirm_swap(self, submission: SwapSubmission) -> Confirmation:
        """
        Confirm every transaction of a swap and verify its balance effect.

        A swap only counts as confirmed when the owner's balance of the
        sold asset went down (or, when selling SOL, the bought asset went up).

        Args:
            submission: Broadcast swap transactions

        Returns:
            Confirmation with the observed deltas

        Raises:
            OnChainFailureError: Failed transaction or no balance change
            ConfirmationTimeoutError: Not observed in time
        """
        slot = None
        input_delta = 0
        output_delta = 0

        for signature in submission.signatures:
            slot = await self.wait_for_signature(signature, submission.last_valid_block_height)

            tx = await self.get_transaction(signature)
            if tx is None:
                raise OnChainFailureError(f"Transaction {signature} confirmed but not retrievable")

            meta = tx.transaction.meta
            if meta is None:
                raise OnChainFailureError(f"Transaction {signature} has no status meta")
            if meta.err is not None:
                logs = list(meta.log_messages or [])
                kind = classify_message(str(meta.err), logs)
                raise OnChainFailureError(
                    f"Transaction {signature} failed ({kind.value}): {meta.err}", logs=logs
                )

            input_delta += self.balance_delta(meta, submission.owner, submission.input_mint)
            output_delta += self.balance_delta(meta, submission.owner, submission.output_mint)

        verified = input_delta < 0 if submission.input_mint != SOL_MINT else output_delta > 0
        if not verified:
            logger.warning(
                "swap_without_balance_change",
                signatures=submission.signatures,
                owner=submission.owner,
                input_mint=submission.input_mint,
            )
            raise OnChainFailureError(
                f"Transaction {submission.signatures[-1]} landed without changing "
                f"the expected balance"
            )

        logger.info(
            "swap_confirmed",
            signatures=submission.signatures,
            input_delta=input_delta,
            output_delta=output_delta,
        )
        return Confirmation(
            signatures=submission.signatures,
            input_delta=input_delta,
            output_delta=output_delta,
            slot=slot,
        )

    @staticmethod
    def balance_delta(meta: Any, owner: str, mint: str) -> int:
        """
        Raw balance change of ``mint`` for ``owner`` in one transaction.

        Native SOL is read from the fee payer's lamports with the fee added
        back, since the owner always pays fees for its own swaps.
        """
        if mint == SOL_MINT:
            pre = list(meta.pre_balances or [])
            post = list(meta.post_balances or [])
            if not pre or not post:
                return 0
            return int(post[0]) - int(pre[0]) + int(meta.fee or 0)

        def total(balances: Any) -> int:
            amount = 0
            for balance in balances or []:
                if str(balance.mint) == mint and str(balance.owner) == owner:
                    amount += int(balance.ui_token_amount.amount)
            return amount

        return total(meta.post_token_balances) - total(meta.pre_token_balances)

    @staticmethod
    def _extract_logs(error: RPCException) -> list[str]:
        """Pull program logs out of a preflight failure, if present."""
        data = error.args[0] if error.args else None
        logs = getattr(getattr(data, "data", None), "logs", None)
        return list(logs or [])

    # =========================================================================
    # Balances
    # =========================================================================

    async def get_token_balances(self, owner: str) -> list[TokenBalance]:
        """
        Get every token account balance held by a wallet.

        Covers both the SPL Token and Token-2022 programs.

        Args:
            owner: Wallet address

        Returns:
            Balances, including zero balances
        """
        owner_key = Pubkey.from_string(owner)
        balances: list[TokenBalance] = []

        for program_id in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            try:
                resp = await self.client.get_token_accounts_by_owner_json_parsed(
                    owner_key,
                    TokenAccountOpts(program_id=program_id),
                )
            except (SolanaRpcException, RPCException) as e:
                logger.error("get_token_balances_error", owner=owner, error=str(e))
                raise NetworkError(f"Failed to get token balances: {str(e)}")

            for account in resp.value:
                try:
                    info = account.account.data.parsed["info"]
                    token_amount = info["tokenAmount"]
                    balances.append(
                        TokenBalance(
                            mint=info["mint"],
                            token_account=str(account.pubkey),
                            raw_amount=int(token_amount["amount"]),
                            decimals=int(token_amount["decimals"]),
                        )
                    )
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("parse_token_account_error", account=str(account.pubkey), error=str(e))
                    continue

        return balances

    async def find_token_account(self, owner: str, mint: str) -> str | None:
        """Find the owner's token account with the largest balance of ``mint``."""
        candidates = [b for b in await self.get_token_balances(owner) if b.mint == mint]
        if not candidates:
            return None
        return max(candidates, key=lambda b: b.raw_amount).token_account

    async def get_mint_decimals(self, mint: str) -> int:
        """Get a mint's decimals from its supply."""
        try:
            resp = await self.client.get_token_supply(Pubkey.from_string(mint))
        except (SolanaRpcException, RPCException) as e:
            raise NetworkError(f"Failed to get token supply: {str(e)}")
        return int(resp.value.decimals)


def get_solana_client() -> SolanaClient:
    """Create and return a SolanaClient instance."""
    return SolanaClient()
