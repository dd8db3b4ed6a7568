"""
Redis Pub/Sub notifications for lifecycle events.

Channels:
- clipstream:videos:published - a video became servable (PUBLIC and ready)

Publishing is best effort: when Redis is unconfigured or unavailable the
event is dropped and the request that triggered it still succeeds.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from api.metrics import REDIS_OPERATIONS_TOTAL
from api.redis_client import get_redis
from config import REDIS_PUBSUB_PREFIX

logger = logging.getLogger(__name__)

VIDEO_PUBLISHED_EVENT = "video.published"


def channel_name(channel_type: str, entity_id: Optional[str] = None) -> str:
    """
    Generate consistent channel name.

    Args:
        channel_type: Type of channel (e.g., "videos")
        entity_id: Optional entity identifier

    Returns:
        Full channel name (e.g., "clipstream:videos:published")
    """
    if entity_id:
        return f"{REDIS_PUBSUB_PREFIX}:{channel_type}:{entity_id}"
    return f"{REDIS_PUBSUB_PREFIX}:{channel_type}"


class Publisher:
    """Publish lifecycle events to Redis Pub/Sub channels."""

    @staticmethod
    async def publish_video_published(
        video_id: str,
        external_id: str,
        owner_id: str,
        title: str,
        source: str,
    ) -> bool:
        """
        Publish a video.published event.

        Args:
            video_id: Internal record id
            external_id: Origin asset id
            owner_id: Uploading account
            title: Video title
            source: Who triggered the publish (webhook, admin)

        Returns:
            True if published successfully
        """
        redis = await get_redis()
        if not redis:
            REDIS_OPERATIONS_TOTAL.labels(operation="publish", result="skipped").inc()
            return False

        message = {
            "type": VIDEO_PUBLISHED_EVENT,
            "video_id": video_id,
            "external_id": external_id,
            "owner_id": owner_id,
            "title": title,
            "source": source,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        published = await redis.publish(channel_name("videos", "published"), json.dumps(message))
        if published:
            REDIS_OPERATIONS_TOTAL.labels(operation="publish", result="success").inc()
        else:
            REDIS_OPERATIONS_TOTAL.labels(operation="publish", result="error").inc()
            logger.warning(f"Failed to publish {VIDEO_PUBLISHED_EVENT} for {external_id}")
        return published
