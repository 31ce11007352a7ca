"""
Alerting package for sale notifications.
"""

from .discord import DiscordWebhook, broadcast, get_webhooks
from .formatting import (
    RarityTier,
    build_sale_embed,
    build_sale_tweet,
    format_sale_log,
    get_rarity_tier,
)
from .twitter import TwitterPoster, get_poster

__all__ = [
    "DiscordWebhook",
    "broadcast",
    "get_webhooks",
    "RarityTier",
    "build_sale_embed",
    "build_sale_tweet",
    "format_sale_log",
    "get_rarity_tier",
    "TwitterPoster",
    "get_poster",
]
