"""
Tensor GraphQL client for collection stats.

Stats come from a single batched POST (not the subscription socket) and are
cached per slug for stats_cache_ttl seconds. A failed call is never retried
here and never falls back to a stale entry.
"""
from typing import Any, Optional

import httpx
import structlog

from tensorbot.cache import KeyedCache
from tensorbot.config.settings import settings
from tensorbot.fetchers.base import BaseClient
from tensorbot.streaming import protocol

logger = structlog.get_logger()


class StatsFetchError(Exception):
    """Stats call returned a non-2xx status or an unexpected body."""
    pass


def stats_cache_key(slug: str) -> str:
    return f"collectionStats:{slug}"


class TensorClient(BaseClient):
    """Client for Tensor's request/response GraphQL API."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        cache: Optional[KeyedCache] = None,
        stats_ttl: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.tensor_api_url
        super().__init__(
            base_url=self.url,
            rate_limit=settings.tensor_rate_limit,
            headers={protocol.API_KEY_HEADER: api_key if api_key is not None else settings.tensor_api_key},
            max_retries=1,
            transport=transport,
        )
        self.cache = cache if cache is not None else KeyedCache(max_entries=settings.cache_max_entries)
        self.stats_ttl = stats_ttl if stats_ttl is not None else settings.stats_cache_ttl

    async def get_collection_stats(self, slug: str) -> dict[str, Any]:
        """
        Fetch statsV2 for a collection.

        Args:
            slug: Collection slug

        Returns:
            Stats object (buyNowPriceNetFees, numMints, ...)

        Raises:
            StatsFetchError: Non-2xx response, transport failure or malformed body
        """
        cache_key = stats_cache_key(slug)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            # Absolute URL so httpx doesn't append a trailing slash to the endpoint
            data = await self.post(self.url, json=[protocol.instrument_stats_request(slug)])
        except httpx.HTTPStatusError as e:
            raise StatsFetchError(
                f"Failed to fetch collection stats for {slug}: HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise StatsFetchError(f"Failed to fetch collection stats for {slug}: {e}") from e

        try:
            stats = data[0]["data"]["instrumentTV2"]["statsV2"]
        except (IndexError, KeyError, TypeError) as e:
            logger.error("Unexpected stats response", slug=slug, preview=str(data)[:200])
            raise StatsFetchError(f"Unexpected stats response for {slug}") from e

        if not isinstance(stats, dict):
            raise StatsFetchError(f"No stats returned for {slug}")

        self.cache.put(cache_key, stats, self.stats_ttl)
        logger.debug("Collection stats fetched", slug=slug, num_mints=stats.get("numMints"))
        return stats
