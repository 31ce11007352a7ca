"""
API client modules for one-shot HTTP calls.

- TensorClient: Collection stats (cached)
- CoinGeckoClient: Fiat conversion (cached)
- BaseClient: Rate-limited HTTP client base class
"""

from tensorbot.fetchers.base import BaseClient, CircuitOpenError, RateLimiter
from tensorbot.fetchers.coingecko import CoinGeckoClient
from tensorbot.fetchers.tensor import StatsFetchError, TensorClient

__all__ = [
    "BaseClient",
    "CircuitOpenError",
    "RateLimiter",
    "CoinGeckoClient",
    "StatsFetchError",
    "TensorClient",
]
