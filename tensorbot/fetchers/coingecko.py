"""
CoinGecko client for fiat conversion of sale prices.

Only /simple/price is used. Results are cached for price_cache_ttl seconds;
get_usd_price() degrades to None so a pricing outage never blocks a sale
notification.
"""
from typing import Optional

import httpx
import structlog

from tensorbot.cache import KeyedCache
from tensorbot.config.settings import settings
from tensorbot.fetchers.base import BaseClient, CircuitOpenError

logger = structlog.get_logger()


class CoinGeckoClient(BaseClient):
    """Client for CoinGecko's public price API."""

    def __init__(
        self,
        cache: Optional[KeyedCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=settings.coingecko_api_base,
            rate_limit=settings.coingecko_rate_limit,
            transport=transport,
        )
        self.cache = cache if cache is not None else KeyedCache(max_entries=settings.cache_max_entries)

    async def get_simple_price(self, ids: str, vs_currencies: str) -> dict[str, dict[str, float]]:
        """
        Fetch spot prices, e.g. get_simple_price("solana", "usd") -> {"solana": {"usd": 142.1}}.

        Raises:
            httpx.HTTPStatusError: On non-2xx response after retries
            CircuitOpenError: If circuit breaker is open
        """
        cache_key = f"simplePrice:{ids}:{vs_currencies}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        data = await self.get("/simple/price", params={"ids": ids, "vs_currencies": vs_currencies})
        self.cache.put(cache_key, data, settings.price_cache_ttl)
        return data

    async def get_usd_price(self, coin: str = "solana") -> Optional[float]:
        """USD price of coin, or None if it can't be fetched."""
        try:
            data = await self.get_simple_price(coin, "usd")
            return float(data[coin]["usd"])
        except (httpx.HTTPError, CircuitOpenError, ValueError, KeyError, TypeError) as e:
            logger.warning("USD price lookup failed", coin=coin, error=str(e))
            return None
