import asyncio
import logging
from typing import List, Protocol, Sequence

from ..models import HistoryEntry, WorkItem
from ..services.correlation_store import CorrelationStore, extend_history
from ..services.work_channel import Delivery, WorkChannel

logger = logging.getLogger(__name__)


class CompletionService(Protocol):
    async def complete(self, prompt: str, history: Sequence[HistoryEntry]) -> str: ...


class Worker:
    """Drains the work channel and publishes answers to the correlation store."""

    def __init__(
        self,
        store: CorrelationStore,
        channel: WorkChannel,
        completion: CompletionService,
        record_ttl_seconds: int = 3600,
        batch_size: int = 10,
        wait_seconds: float = 20,
        idle_seconds: float = 1.0,
    ) -> None:
        self._store = store
        self._channel = channel
        self._completion = completion
        self._ttl = record_ttl_seconds
        self._batch_size = batch_size
        self._wait_seconds = wait_seconds
        self._idle_seconds = idle_seconds

    async def load_history(self, prior_request_id: str | None) -> List[HistoryEntry]:
        """Return the history of the prior turn, or an empty one if it is unavailable."""
        if not prior_request_id:
            return []
        try:
            record = await self._store.get(prior_request_id)
        except Exception as e:
            logger.warning("Fetching history %s failed, starting fresh: %s", prior_request_id, e)
            return []
        if record is None:
            logger.info("No prior record %s; continuing without history", prior_request_id)
            return []
        return list(record.history)

    async def process_item(self, item: WorkItem) -> str:
        """Answer one work item and store the extended conversation.

        Completion and store-write errors propagate so the item is redelivered.
        """
        history = await self.load_history(item.prior_request_id)
        response_text = await self._completion.complete(item.prompt, history)
        new_history = extend_history(history, item.prompt, response_text)
        await self._store.put(item.request_id, response_text, new_history, self._ttl)
        logger.info(
            "Processed %s (%d history entries)", item.request_id, len(new_history)
        )
        return response_text

    async def _process_delivery(self, delivery: Delivery) -> bool:
        try:
            await self.process_item(delivery.item)
        except Exception as e:
            logger.exception(
                "Work item %s failed on attempt %d: %s",
                delivery.item.request_id,
                delivery.attempt,
                e,
            )
            await self._channel.nack(delivery)
            return False
        await self._channel.ack(delivery)
        return True

    async def process_batch(self, deliveries: Sequence[Delivery]) -> int:
        """Process deliveries concurrently; returns how many succeeded."""
        if not deliveries:
            return 0
        results = await asyncio.gather(*(self._process_delivery(d) for d in deliveries))
        return sum(1 for ok in results if ok)

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Receive and process batches until stop is set."""
        stop = stop or asyncio.Event()
        await self._channel.recover()
        logger.info("Worker started")
        while not stop.is_set():
            deliveries = await self._channel.receive(
                max_items=self._batch_size, wait_seconds=self._wait_seconds
            )
            if not deliveries:
                await asyncio.sleep(self._idle_seconds)
                continue
            await self.process_batch(deliveries)
        logger.info("Worker stopped")
