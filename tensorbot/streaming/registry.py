"""
Subscription registry.

Maps each subscribed slug to the id of its live subscribe request, and back.
Both directions are updated together so an inbound frame's id resolves to its
slug in O(1), and a replaced id stops resolving immediately.
"""

import uuid
from typing import Any, Callable, Optional


class SubscriptionRegistry:
    """Bidirectional slug <-> subscription id mapping."""

    def __init__(self, id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self._id_factory = id_factory
        self.slug_to_id: dict[str, str] = {}
        self.id_to_slug: dict[str, str] = {}

    def register(self, slug: str) -> str:
        """
        Assign a fresh subscription id to slug.

        Any previous id for the slug is discarded and no longer resolves.

        Returns:
            The new subscription id
        """
        subscription_id = self._id_factory()

        previous = self.slug_to_id.get(slug)
        if previous is not None:
            self.id_to_slug.pop(previous, None)

        self.slug_to_id[slug] = subscription_id
        self.id_to_slug[subscription_id] = slug
        return subscription_id

    def get(self, slug: str) -> Optional[str]:
        """Current subscription id for slug."""
        return self.slug_to_id.get(slug)

    def resolve(self, subscription_id: Any) -> Optional[str]:
        """Slug that subscription_id was issued for, or None if unknown or not a string."""
        if not isinstance(subscription_id, str):
            return None
        return self.id_to_slug.get(subscription_id)

    def topics(self) -> list[str]:
        """Subscribed slugs in subscription order."""
        return list(self.slug_to_id)

    def __contains__(self, slug: str) -> bool:
        return slug in self.slug_to_id

    def __len__(self) -> int:
        return len(self.slug_to_id)
