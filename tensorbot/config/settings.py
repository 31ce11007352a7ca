"""
Application configuration using Pydantic Settings.

All settings loaded from environment variables with sensible defaults.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ===========================================
    # Tensor API
    # ===========================================
    tensor_api_url: str = "https://api.tensor.so/graphql"
    tensor_api_key: str = ""
    tensor_rate_limit: float = 5.0  # Stats requests per second

    # Collections to follow (comma-separated slugs)
    slugs: str = ""

    # ===========================================
    # Subscription session
    # ===========================================
    keepalive_interval: float = 30.0  # Application-level ping
    handshake_timeout: float = 30.0  # 0 waits forever
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 60.0
    stale_threshold: float = 120.0  # Force reconnect after 2 min of silence, 0 disables

    # ===========================================
    # Caching
    # ===========================================
    stats_cache_ttl: int = 300  # 5 min
    cache_max_entries: int = 1024  # 0 = unbounded

    # ===========================================
    # CoinGecko (currency conversion)
    # ===========================================
    coingecko_api_base: str = "https://api.coingecko.com/api/v3"
    coingecko_rate_limit: float = 0.5  # Free tier is ~30/min
    price_cache_ttl: int = 300

    # ===========================================
    # Notifications
    # ===========================================
    allowed_tx_types: str = "SALE_BUY_NOW,SALE_ACCEPT_BID"
    discord_webhooks: str = ""

    twitter_api_key: str = ""
    twitter_api_secret: str = ""
    twitter_access_token: str = ""
    twitter_access_token_secret: str = ""

    # ===========================================
    # Application
    # ===========================================
    log_level: str = "INFO"

    @property
    def slug_list(self) -> list[str]:
        return _split_csv(self.slugs)

    @property
    def discord_webhook_list(self) -> list[str]:
        return _split_csv(self.discord_webhooks)

    @property
    def allowed_tx_type_list(self) -> list[str]:
        return _split_csv(self.allowed_tx_types)

    @property
    def twitter_enabled(self) -> bool:
        return all((
            self.twitter_api_key,
            self.twitter_api_secret,
            self.twitter_access_token,
            self.twitter_access_token_secret,
        ))


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience access
settings = get_settings()
