"""
Wallet handles for ExitPilot.

A wallet handle signs provider-built transactions and submits them.
Key storage stays outside this module; handles are built from secret
keys supplied by configuration.
"""

from typing import Protocol

import structlog
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from shared.config import Settings, get_settings
from shared.solana_client import SolanaClient

logger = structlog.get_logger(__name__)


class WalletError(Exception):
    """Raised when a wallet cannot be loaded or cannot sign."""

    pass


class WalletHandle(Protocol):
    """Opaque signer for one wallet."""

    @property
    def address(self) -> str: ...

    async def sign_and_submit(self, transaction: bytes) -> str: ...


class WalletProvider(Protocol):
    """Resolves an owner to the wallet that signs its exits."""

    async def get_wallet(self, owner_id: str) -> WalletHandle | None: ...


class KeypairWallet:
    """Wallet handle backed by an in-memory keypair."""

    def __init__(self, keypair: Keypair, rpc: SolanaClient):
        self._keypair = keypair
        self._rpc = rpc

    @property
    def address(self) -> str:
        return str(self._keypair.pubkey())

    async def sign_and_submit(self, transaction: bytes) -> str:
        """
        Sign a serialized provider transaction and broadcast it.

        Both legacy and v0 messages deserialize as a VersionedTransaction.

        Args:
            transaction: Unsigned serialized transaction

        Returns:
            Transaction signature
        """
        try:
            unsigned = VersionedTransaction.from_bytes(transaction)
            signed = VersionedTransaction(unsigned.message, [self._keypair])
        except Exception as e:
            logger.error("sign_transaction_error", wallet=self.address, error=str(e))
            raise WalletError(f"Failed to sign transaction: {str(e)}")
        return await self._rpc.send_raw_transaction(bytes(signed))


class KeypairWalletProvider:
    """
    Wallet provider reading base58 secret keys from settings.

    Keypairs are decoded once per owner and cached.
    """

    def __init__(
        self,
        rpc: SolanaClient,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self._rpc = rpc
        self._wallets: dict[str, KeypairWallet] = {}

    async def get_wallet(self, owner_id: str) -> KeypairWallet | None:
        """
        Get the wallet handle for an owner.

        Returns:
            Handle, or None if no key is configured for the owner
        """
        if owner_id in self._wallets:
            return self._wallets[owner_id]

        secret = self.settings.wallet_keys.get(owner_id)
        if not secret:
            logger.warning("wallet_not_configured", owner_id=owner_id)
            return None

        try:
            keypair = Keypair.from_base58_string(secret)
        except Exception as e:
            logger.error("wallet_load_error", owner_id=owner_id, error=str(e))
            raise WalletError(f"Invalid secret key for owner {owner_id}")

        wallet = KeypairWallet(keypair, self._rpc)
        self._wallets[owner_id] = wallet
        logger.info("wallet_loaded", owner_id=owner_id, address=wallet.address)
        return wallet
