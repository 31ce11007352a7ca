"""
Sales bot runner.

Main entry point that orchestrates:
1. Tensor session (connect, subscribe configured slugs)
2. Sale listeners for the allowed transaction types
3. Stats and price enrichment
4. Delivery to Discord webhooks and Twitter
"""

import asyncio
import logging
import signal as sig
import sys
from typing import Optional

import structlog

from tensorbot.alerts.discord import DiscordWebhook, broadcast, get_webhooks
from tensorbot.alerts.formatting import build_sale_embed, build_sale_tweet, format_sale_log
from tensorbot.alerts.twitter import TwitterPoster, get_poster
from tensorbot.config.settings import Settings, get_settings
from tensorbot.fetchers.base import CircuitOpenError
from tensorbot.fetchers.coingecko import CoinGeckoClient
from tensorbot.fetchers.tensor import StatsFetchError, TensorClient
from tensorbot.streaming.dispatcher import WILDCARD
from tensorbot.streaming.events import Transaction
from tensorbot.streaming.session import TensorSession

logger = structlog.get_logger()


class SalesRunner:
    """
    Wires the session to the notification outlets.

    Runs until stop() is called.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        session: Optional[TensorSession] = None,
        prices: Optional[CoinGeckoClient] = None,
        webhooks: Optional[list[DiscordWebhook]] = None,
        twitter: Optional[TwitterPoster] = None,
    ):
        self.config = config or get_settings()
        self.stats_client: Optional[TensorClient] = None
        if session is None:
            self.stats_client = TensorClient(self.config.tensor_api_url, self.config.tensor_api_key)
            session = TensorSession(
                self.config.tensor_api_url,
                self.config.tensor_api_key,
                stats_client=self.stats_client,
            )
        self.session = session
        self.prices = prices or CoinGeckoClient()
        self.webhooks = webhooks if webhooks is not None else get_webhooks()
        self.twitter = twitter if twitter is not None else get_poster()
        self._stopped = asyncio.Event()

    def validate(self) -> list[str]:
        """Missing required settings (empty when runnable)."""
        missing = []
        if not self.config.tensor_api_key:
            missing.append("TENSOR_API_KEY")
        if not self.config.slug_list:
            missing.append("SLUGS")
        return missing

    async def run(self) -> None:
        """Connect, subscribe, and wait until stopped."""
        for tx_type in self.config.allowed_tx_type_list:
            self.session.on(f"{WILDCARD}:{tx_type}", self._on_sale)

        logger.info(
            "Starting sales bot",
            slugs=self.config.slug_list,
            tx_types=self.config.allowed_tx_type_list,
            discord_webhooks=len(self.webhooks),
            twitter=self.twitter is not None,
        )

        try:
            await self.session.connect()
            for slug in self.config.slug_list:
                await self.session.subscribe(slug)

            await self._stopped.wait()
        finally:
            await self.session.stop()
            await self.session.dispatcher.drain(timeout=30)
            await self._close_clients()
            logger.info("Sales bot stopped", **self.session.get_stats())

    async def _on_sale(self, transaction: Transaction, slug: str) -> None:
        """Enrich one sale and deliver it everywhere."""
        stats = None
        try:
            stats = await self.session.fetch_stats(slug)
        except (StatsFetchError, CircuitOpenError) as e:
            logger.error("Collection stats unavailable", slug=slug, error=str(e))

        logger.info(format_sale_log(transaction), slug=slug)

        usd_rate = await self.prices.get_usd_price("solana")

        if self.webhooks:
            embed = build_sale_embed(transaction, stats, usd_rate)
            sent = await broadcast(self.webhooks, embed)
            logger.debug("Discord notifications sent", sent=sent, total=len(self.webhooks))

        if self.twitter is not None:
            text = build_sale_tweet(transaction, stats, usd_rate)
            await self.twitter.post(text, transaction.mint.image_uri)

    async def _close_clients(self) -> None:
        if self.stats_client is not None:
            await self.stats_client.close()
        await self.prices.close()
        for webhook in self.webhooks:
            await webhook.close()
        if self.twitter is not None:
            await self.twitter.close()

    def stop(self) -> None:
        """Stop the runner."""
        logger.info("Stopping sales bot")
        self._stopped.set()


async def main() -> int:
    """Entry point for the sales bot."""
    runner = SalesRunner()

    missing = runner.validate()
    if missing:
        logger.error("Missing required settings", missing=missing)
        return 1

    loop = asyncio.get_running_loop()
    for signum in (sig.SIGTERM, sig.SIGINT):
        loop.add_signal_handler(signum, runner.stop)

    await runner.run()
    return 0


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the bot."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Reduce noise from transport libraries
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def cli() -> None:
    setup_logging(get_settings().log_level)
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
