"""
Payout status notifications.

Supports:
1. Redis pub/sub (production, when REDIS_URL is set)
2. Log-only publisher (development/testing)

Topic: payout:<payout_id>:status
Payload: {"status": ..., "timestamp": ..., **metadata}

Publishing is best effort: it happens after the ledger transaction has
committed and a failure is logged, never raised.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from referral_ledger.core.clock import utcnow
from referral_ledger.database import custom_json_dumps


logger = logging.getLogger(__name__)


class NotificationPublisher(ABC):
    """Abstract notification backend interface."""

    @abstractmethod
    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        """Publish a JSON payload on a topic."""
        pass

    async def close(self) -> None:
        pass


class LoggingNotificationPublisher(NotificationPublisher):
    """Writes notifications to the log. Used when no broker is configured."""

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notification {topic}: {custom_json_dumps(payload)}")


class RedisNotificationPublisher(NotificationPublisher):
    """Redis pub/sub backend."""

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        client = await self._get_client()
        await client.publish(topic, custom_json_dumps(payload))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_notification_publisher(redis_url: Optional[str]) -> NotificationPublisher:
    if redis_url:
        logger.info("Payout notifications: Redis pub/sub")
        return RedisNotificationPublisher(redis_url)
    logger.info("Payout notifications: log only (REDIS_URL not set)")
    return LoggingNotificationPublisher()


def payout_status_topic(payout_id) -> str:
    return f"payout:{payout_id}:status"


async def publish_payout_status(
    publisher: Optional[NotificationPublisher],
    payout_id,
    status: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Announce a payout status change. Returns False if publishing failed.

    Never raises: the status change itself is already committed.
    """
    if publisher is None:
        return False

    payload: Dict[str, Any] = {
        "status": status,
        "timestamp": utcnow().isoformat(),
    }
    payload.update(metadata or {})

    try:
        await publisher.publish(payout_status_topic(payout_id), payload)
        return True
    except Exception as e:
        logger.error(f"Failed to publish payout status for {payout_id}: {e}")
        return False
