"""
Token price source for ExitPilot.

Current USD prices from Jupiter's token search, with DexScreener as
fallback. Prices are cached briefly so a fast monitor tick does not
hammer either API.
"""

import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

import httpx
import structlog

from shared.config import Settings, get_settings

logger = structlog.get_logger(__name__)


def _to_price(value: Any) -> Decimal | None:
    """Parse a positive price, None otherwise."""
    if value is None:
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        return None
    return price if price > 0 else None


class PriceClient:
    """
    Async price source.

    ``get_current_price`` never raises for a missing price; callers treat
    None as "unavailable this tick".
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize price client.

        Args:
            settings: Settings instance. If None, loads from environment.
            http_client: Optional pre-built HTTP client
            clock: Monotonic clock, injectable for tests
        """
        self.settings = settings or get_settings()
        self._client = http_client
        self._clock = clock
        self._cache: dict[str, tuple[Decimal, float]] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.price.request_timeout_seconds,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_current_price(self, mint: str) -> Decimal | None:
        """
        Get the current USD price of a token.

        Args:
            mint: Token mint address

        Returns:
            Price, or None if no source has one
        """
        cached = self._cache.get(mint)
        if cached and self._clock() - cached[1] < self.settings.price.cache_ttl_seconds:
            return cached[0]

        price = await self._jupiter_price(mint)
        if price is None:
            price = await self._dexscreener_price(mint)

        if price is None:
            logger.debug("price_unavailable", mint=mint)
            return None

        self._cache[mint] = (price, self._clock())
        return price

    def invalidate(self, mint: str | None = None) -> None:
        """Drop one cached price, or all of them."""
        if mint is None:
            self._cache.clear()
        else:
            self._cache.pop(mint, None)

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("price_request_error", url=url, error=str(e))
            return None

    async def _jupiter_price(self, mint: str) -> Decimal | None:
        url = f"{self.settings.price.jupiter_url.rstrip('/')}/tokens/v2/search"
        data = await self._get_json(url, params={"query": mint})
        if not isinstance(data, list):
            return None
        token = next((t for t in data if isinstance(t, dict) and t.get("id") == mint), None)
        return _to_price(token.get("usdPrice")) if token else None

    async def _dexscreener_price(self, mint: str) -> Decimal | None:
        url = f"{self.settings.price.dexscreener_url.rstrip('/')}/latest/dex/tokens/{mint}"
        data = await self._get_json(url)
        if not isinstance(data, dict):
            return None
        pairs = data.get("pairs") or []
        return _to_price(pairs[0].get("priceUsd")) if pairs else None


def get_price_client() -> PriceClient:
    """Create and return a PriceClient instance."""
    return PriceClient()
