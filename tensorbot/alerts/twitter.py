"""
Twitter/X delivery for sale notifications.

Needs an app with OAuth 1.0a user context (read + write). Media upload still
goes through the v1.1 endpoint; the tweet itself through v2. tweepy is
synchronous, so calls run in a worker thread.
"""

import asyncio
import io
import logging
import mimetypes
from typing import Optional

import httpx
import tweepy

from tensorbot.config.settings import settings

logger = logging.getLogger(__name__)


class TwitterPoster:
    """Posts sale tweets with the item image attached."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        access_token: Optional[str] = None,
        access_token_secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        api_key = api_key or settings.twitter_api_key
        api_secret = api_secret or settings.twitter_api_secret
        access_token = access_token or settings.twitter_access_token
        access_token_secret = access_token_secret or settings.twitter_access_token_secret

        auth = tweepy.OAuth1UserHandler(api_key, api_secret, access_token, access_token_secret)
        self.api = tweepy.API(auth)
        self.client = tweepy.Client(
            consumer_key=api_key,
            consumer_secret=api_secret,
            access_token=access_token,
            access_token_secret=access_token_secret,
        )
        self.http = httpx.AsyncClient(timeout=15, follow_redirects=True, transport=transport)

    async def fetch_image(self, image_uri: str) -> Optional[tuple[bytes, str]]:
        """Download an image; returns (bytes, filename) or None on failure."""
        try:
            response = await self.http.get(image_uri)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Could not fetch image {image_uri}: {e}")
            return None

        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        extension = mimetypes.guess_extension(content_type) or ".png"
        return response.content, f"image{extension}"

    def _upload_media(self, data: bytes, filename: str) -> Optional[str]:
        try:
            media = self.api.media_upload(filename=filename, file=io.BytesIO(data))
            return str(media.media_id)
        except tweepy.TweepyException as e:
            logger.error(f"Twitter media upload failed: {e}")
            return None

    def _create_tweet(self, text: str, media_ids: list[str]) -> None:
        self.client.create_tweet(text=text, media_ids=media_ids or None)

    async def post(self, text: str, image_uri: Optional[str] = None) -> bool:
        """
        Tweet text, attaching image_uri when it can be downloaded and uploaded.

        Returns:
            True if the tweet was created, False otherwise
        """
        media_ids: list[str] = []
        if image_uri:
            image = await self.fetch_image(image_uri)
            if image is not None:
                media_id = await asyncio.to_thread(self._upload_media, *image)
                if media_id:
                    media_ids.append(media_id)

        try:
            await asyncio.to_thread(self._create_tweet, text, media_ids)
            return True
        except tweepy.TweepyException as e:
            logger.error(f"Failed to send tweet: {e}")
            return False

    async def close(self) -> None:
        await self.http.aclose()


def get_poster() -> Optional[TwitterPoster]:
    """TwitterPoster if all four credentials are configured, else None."""
    if not settings.twitter_enabled:
        logger.debug("Twitter posting disabled (credentials not configured)")
        return None
    return TwitterPoster()
