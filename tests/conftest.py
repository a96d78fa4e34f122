"""
Shared pytest fixtures and test configuration for ExitPilot.
"""

import os
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from faker import Faker

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["GCP_PROJECT_ID"] = "test-project"

from shared.models import (  # noqa: E402
    ExitConditions,
    ExitRule,
    Position,
    PositionSource,
    ProviderName,
    SwapResult,
)

fake = Faker()

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

OWNER_ID = "owner-001"
WALLET_ADDRESS = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
TOKEN_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
OTHER_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


def random_address() -> str:
    """Return a random base58 string shaped like a Solana address."""
    return "".join(fake.random_choices(BASE58_ALPHABET, length=44))


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def mock_settings() -> MagicMock:
    """Create mock settings with production defaults and fast timings."""
    settings = MagicMock()
    settings.environment = "test"
    settings.gcp_project_id = "test-project"
    settings.wallet_keys = {}

    settings.solana = SimpleNamespace(
        rpc_url="http://localhost:8899",
        commitment="confirmed",
        confirm_timeout_seconds=5.0,
        confirm_poll_interval_seconds=0.0,
        request_timeout_seconds=1.0,
    )
    settings.jupiter = SimpleNamespace(
        base_url="https://jupiter.test",
        restrict_intermediate_tokens=True,
        dynamic_slippage=True,
        request_timeout_seconds=1.0,
    )
    settings.raydium = SimpleNamespace(
        base_url="https://raydium.test",
        api_url="https://raydium-api.test",
        priority_level="h",
        request_timeout_seconds=1.0,
    )
    settings.dispatcher = SimpleNamespace(
        provider_order=["jupiter", "raydium"],
        enable_fallback=True,
        default_slippage_bps=50,
        min_call_interval_seconds=0.5,
        max_attempts=3,
        backoff_base_seconds=1.0,
        circuit_breaker_threshold=5,
        circuit_breaker_timeout_seconds=60.0,
    )
    settings.monitor = SimpleNamespace(
        enabled=True,
        interval_seconds=1.0,
        max_concurrency=4,
        max_position_errors=3,
    )
    settings.discovery = SimpleNamespace(
        enabled=True,
        interval_seconds=10.0,
        rule_refresh_interval_seconds=300.0,
        initial_lookback_minutes=60,
        scan_balances=True,
    )
    settings.price = SimpleNamespace(
        jupiter_url="https://jupiter.test",
        dexscreener_url="https://dexscreener.test",
        cache_ttl_seconds=5.0,
        request_timeout_seconds=1.0,
    )
    return settings


# ============================================================================
# Domain Fixtures
# ============================================================================


@pytest.fixture
def exit_conditions() -> ExitConditions:
    """Take-profit 20%, stop-loss 10%, trailing stop 10%."""
    return ExitConditions(
        take_profit_pct=Decimal("20"),
        stop_loss_pct=Decimal("10"),
        trailing_stop_pct=Decimal("10"),
    )


@pytest.fixture
def exit_rule(exit_conditions) -> ExitRule:
    """Return an active exit rule for the test owner."""
    return ExitRule(
        id="rule-001",
        owner_id=OWNER_ID,
        wallet_address=WALLET_ADDRESS,
        conditions=exit_conditions,
        created_at=datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def make_position(exit_conditions):
    """Factory for positions owned by the test owner."""

    def _make(
        asset_address: str = TOKEN_MINT,
        entry_price: str = "1.0",
        current_price: str | None = None,
        quantity: str = "1000",
        conditions: ExitConditions | None = None,
        owner_id: str = OWNER_ID,
    ) -> Position:
        return Position.create(
            owner_id=owner_id,
            asset_address=asset_address,
            rule_id="rule-001",
            wallet_address=WALLET_ADDRESS,
            conditions=conditions or exit_conditions,
            entry_price=Decimal(entry_price),
            current_price=Decimal(current_price or entry_price),
            quantity=Decimal(quantity),
            decimals=6,
            source=PositionSource.MANUAL,
        )

    return _make


@pytest.fixture
def swap_result() -> SwapResult:
    """Return a successful Jupiter swap result."""
    return SwapResult(
        provider=ProviderName.JUPITER,
        signatures=["5" * 88],
        input_mint=TOKEN_MINT,
        output_mint="So11111111111111111111111111111111111111112",
        input_amount=1_000_000_000,
        received_amount=2_500_000_000,
    )


# ============================================================================
# Mock Client Fixtures
# ============================================================================


@pytest.fixture
def mock_firestore_client() -> MagicMock:
    """Create a mocked Firestore client."""
    client = MagicMock()
    client.get_active_exit_rules = AsyncMock(return_value=[])
    client.get_buy_events_since = AsyncMock(return_value=[])
    client.get_latest_buy_event = AsyncMock(return_value=None)
    client.is_position_exited = AsyncMock(return_value=False)
    client.mark_position_exited = AsyncMock(side_effect=lambda entry: entry)
    client.get_exited_positions = AsyncMock(return_value=[])
    client.record_exit_event = AsyncMock()
    client.record_position_alert = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_price_client() -> MagicMock:
    """Create a mocked price source."""
    client = MagicMock()
    client.get_current_price = AsyncMock(return_value=Decimal("1.0"))
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_solana_client() -> MagicMock:
    """Create a mocked Solana RPC client."""
    client = MagicMock()
    client.get_token_balances = AsyncMock(return_value=[])
    client.get_mint_decimals = AsyncMock(return_value=6)
    client.find_token_account = AsyncMock(return_value=None)
    client.send_raw_transaction = AsyncMock(return_value="5" * 88)
    client.confirm_swap = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_wallet() -> MagicMock:
    """Create a mocked wallet handle for the test owner."""
    wallet = MagicMock()
    wallet.address = WALLET_ADDRESS
    wallet.sign_and_submit = AsyncMock(return_value="5" * 88)
    return wallet


@pytest.fixture
def mock_wallet_provider(mock_wallet) -> MagicMock:
    """Create a wallet provider that resolves every owner to the test wallet."""
    provider = MagicMock()
    provider.get_wallet = AsyncMock(return_value=mock_wallet)
    return provider


@pytest.fixture
def mock_sink() -> MagicMock:
    """Create a mocked notification sink."""
    sink = MagicMock()
    sink.on_exit = AsyncMock()
    sink.on_exit_failed = AsyncMock()
    sink.on_position_alert = AsyncMock()
    return sink


# ============================================================================
# HTTP Client Fixtures
# ============================================================================


def make_response(
    status_code: int = 200,
    json_data: Any = None,
    headers: dict[str, str] | None = None,
) -> MagicMock:
    """Build a mocked httpx response."""
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.content = b"{}" if json_data is not None else b""
    response.json = MagicMock(return_value=json_data)
    response.text = ""
    return response


@pytest.fixture
def mock_httpx_client() -> MagicMock:
    """Create a mocked httpx async client."""
    client = MagicMock()
    client.get = AsyncMock()
    client.post = AsyncMock()
    client.request = AsyncMock()
    client.aclose = AsyncMock()
    return client


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def anyio_backend() -> str:
    """Configure anyio backend for async tests."""
    return "asyncio"


# ============================================================================
# Cleanup Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def reset_environment() -> Generator[None, None, None]:
    """Reset environment variables after each test."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def response_factory():
    """Return the mocked httpx response builder."""
    return make_response


@pytest.fixture
def random_mint() -> str:
    """Return a random mint address."""
    return random_address()
