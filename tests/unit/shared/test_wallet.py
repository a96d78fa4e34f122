"""
Unit tests for shared/wallet.py
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from shared.wallet import KeypairWallet, KeypairWalletProvider, WalletError


@pytest.fixture
def keypair():
    return Keypair()


@pytest.fixture
def rpc():
    client = MagicMock()
    client.send_raw_transaction = AsyncMock(return_value="sig-1")
    return client


def unsigned_transaction(payer: Keypair) -> bytes:
    """Serialize a v0 transfer with a placeholder signature, as providers return it."""
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.default(), lamports=1))
    message = MessageV0.try_compile(payer.pubkey(), [ix], [], Hash.default())
    return bytes(VersionedTransaction.populate(message, [Signature.default()]))


class TestKeypairWallet:
    """Tests for KeypairWallet."""

    def test_address(self, keypair, rpc):
        """Test the address is the keypair's public key."""
        assert KeypairWallet(keypair, rpc).address == str(keypair.pubkey())

    @pytest.mark.asyncio
    async def test_sign_and_submit(self, keypair, rpc):
        """Test the transaction is signed by the wallet and broadcast."""
        wallet = KeypairWallet(keypair, rpc)

        signature = await wallet.sign_and_submit(unsigned_transaction(keypair))

        assert signature == "sig-1"
        sent = VersionedTransaction.from_bytes(rpc.send_raw_transaction.await_args.args[0])
        assert sent.signatures[0] != Signature.default()

    @pytest.mark.asyncio
    async def test_garbage_transaction(self, keypair, rpc):
        """Test undecodable bytes are a wallet error and nothing is sent."""
        wallet = KeypairWallet(keypair, rpc)

        with pytest.raises(WalletError):
            await wallet.sign_and_submit(b"not a transaction")

        rpc.send_raw_transaction.assert_not_awaited()


class TestKeypairWalletProvider:
    """Tests for KeypairWalletProvider."""

    @pytest.mark.asyncio
    async def test_configured_owner(self, keypair, rpc, mock_settings):
        """Test an owner's key is loaded and cached."""
        mock_settings.wallet_keys = {"owner-001": str(keypair)}
        provider = KeypairWalletProvider(rpc, settings=mock_settings)

        wallet = await provider.get_wallet("owner-001")

        assert wallet.address == str(keypair.pubkey())
        assert await provider.get_wallet("owner-001") is wallet

    @pytest.mark.asyncio
    async def test_unknown_owner(self, rpc, mock_settings):
        """Test an owner without a key has no wallet."""
        provider = KeypairWalletProvider(rpc, settings=mock_settings)

        assert await provider.get_wallet("nobody") is None

