"""
Discord webhook delivery for sale notifications.

Setup:
1. Server Settings -> Integrations -> Webhooks -> New Webhook
2. Copy the webhook URL
3. Set DISCORD_WEBHOOKS in .env (comma-separated for several channels)
"""

import logging
from typing import Optional

import httpx

from tensorbot.config.settings import settings

logger = logging.getLogger(__name__)


class DiscordWebhook:
    """Posts embeds to a single Discord webhook."""

    def __init__(self, url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.client = httpx.AsyncClient(timeout=10, transport=transport)

    async def send(self, embed: dict) -> bool:
        """
        Send one embed.

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            response = await self.client.post(self.url, json={"embeds": [embed]})
            response.raise_for_status()
            return True
        except httpx.HTTPStatusError as e:
            logger.error(f"Discord webhook error: {e.response.status_code} - {e.response.text[:200]}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Discord webhook: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()


def get_webhooks() -> list[DiscordWebhook]:
    """One DiscordWebhook per configured URL."""
    return [DiscordWebhook(url) for url in settings.discord_webhook_list]


async def broadcast(webhooks: list[DiscordWebhook], embed: dict) -> int:
    """Send embed to every webhook; returns how many succeeded."""
    sent = 0
    for webhook in webhooks:
        if await webhook.send(embed):
            sent += 1
    return sent
