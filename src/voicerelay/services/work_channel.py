"""Durable work queue between the gateway and the worker.

Items live in Redis lists. ``receive`` moves each item from the pending list
into a processing list in one atomic step; it stays there until the worker
acknowledges it. Anything left in processing when a worker dies is pushed
back by ``recover``, so delivery is at-least-once and an item can be seen
more than once.
"""

import json
import logging
from dataclasses import dataclass
from typing import List

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import WorkItem
from ..settings import get_settings
from .redis import RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)


class WorkChannelError(RuntimeError):
    """A work item could not be handed to the queue."""


@dataclass(frozen=True)
class Delivery:
    """A work item as received by a worker, with its raw payload for ack/nack."""

    item: WorkItem
    payload: str
    attempt: int


class WorkChannel:
    """At-least-once Redis list queue for WorkItems."""

    def __init__(
        self,
        redis_crud: RedisCrudService,
        queue_name: str = "voicerelay:workitems",
        max_deliveries: int = 5,
    ) -> None:
        self._redis = redis_crud
        self._max_deliveries = max_deliveries
        self.pending_key = f"{queue_name}:pending"
        self.processing_key = f"{queue_name}:processing"
        self.deliveries_key = f"{queue_name}:deliveries"
        self.dead_key = f"{queue_name}:dead"

    async def submit(self, item: WorkItem) -> None:
        """Enqueue item for detached processing; returns once Redis accepted it."""
        payload = json.dumps(item.to_dict())
        if not await self._redis.push(self.pending_key, payload):
            raise WorkChannelError(f"Could not enqueue work item {item.request_id}")
        logger.debug("Submitted work item %s", item.request_id)

    async def receive(self, max_items: int = 10, wait_seconds: float = 20) -> List[Delivery]:
        """Return up to max_items deliveries, waiting up to wait_seconds for the first."""
        deliveries: List[Delivery] = []
        timeout: float | None = wait_seconds
        while len(deliveries) < max_items:
            payload = await self._redis.move(
                self.pending_key, self.processing_key, timeout=timeout
            )
            if payload is None:
                break
            timeout = None
            delivery = await self._to_delivery(payload)
            if delivery is not None:
                deliveries.append(delivery)
        return deliveries

    async def _to_delivery(self, payload: str) -> Delivery | None:
        try:
            item = WorkItem.from_dict(json.loads(payload))
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            logger.error("Dropping undecodable work item to dead letters: %s", e)
            await self._bury(payload)
            return None
        attempt = await self._redis.increment(self.deliveries_key, item.request_id)
        return Delivery(item=item, payload=payload, attempt=attempt or 1)

    async def ack(self, delivery: Delivery) -> None:
        """Mark delivery as processed."""
        await self._redis.remove(self.processing_key, delivery.payload)
        await self._redis.delete_field(self.deliveries_key, delivery.item.request_id)

    async def nack(self, delivery: Delivery) -> None:
        """Hand delivery back for redelivery, or dead-letter it once the cap is reached."""
        if delivery.attempt >= self._max_deliveries:
            logger.error(
                "Work item %s failed %d times; moving to dead letters",
                delivery.item.request_id,
                delivery.attempt,
            )
            await self._bury(delivery.payload)
            await self._redis.delete_field(self.deliveries_key, delivery.item.request_id)
            return
        if not await self._redis.requeue(self.processing_key, self.pending_key, delivery.payload):
            logger.error(
                "Could not requeue work item %s; it stays in processing until recovered",
                delivery.item.request_id,
            )

    async def recover(self) -> int:
        """Push items abandoned in processing back to pending. Returns how many moved."""
        moved = 0
        while await self._redis.move(self.processing_key, self.pending_key) is not None:
            moved += 1
        if moved:
            logger.warning("Recovered %d unacknowledged work items", moved)
        return moved

    async def dead_letters(self) -> List[WorkItem]:
        """Return the decodable items that exhausted their deliveries."""
        items: List[WorkItem] = []
        for payload in await self._redis.items(self.dead_key):
            try:
                items.append(WorkItem.from_dict(json.loads(payload)))
            except (json.JSONDecodeError, KeyError, TypeError, AttributeError):
                continue
        return items

    async def _bury(self, payload: str) -> None:
        await self._redis.requeue(self.processing_key, self.dead_key, payload)


# Lazy singleton for optional async init (connect to Redis)
_channel_instance: WorkChannel | None = None


async def get_work_channel_async() -> WorkChannel | None:
    """Return the work channel after ensuring Redis is connected. Cached."""
    global _channel_instance
    if _channel_instance is not None:
        return _channel_instance
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        return None
    try:
        await redis_crud.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Work channel unavailable (Redis): %s", e)
        return None
    settings = get_settings()
    _channel_instance = WorkChannel(
        redis_crud=redis_crud,
        queue_name=settings.queue_name,
        max_deliveries=settings.max_deliveries,
    )
    return _channel_instance


async def close_work_channel() -> None:
    """Close the Redis connection used by the work channel. Idempotent."""
    global _channel_instance
    if _channel_instance is not None:
        await _channel_instance._redis.close()
        _channel_instance = None
        logger.debug("Work channel (Redis) closed")
