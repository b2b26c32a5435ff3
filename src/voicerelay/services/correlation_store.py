import json
import logging
import time
from typing import Any, Callable, Dict, List, Sequence

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import MODEL_ROLE, USER_ROLE, CorrelationRecord, HistoryEntry
from ..settings import get_settings
from .redis import RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)


class CorrelationStoreError(RuntimeError):
    """A correlation record could not be written."""


def _record_to_dict(record: CorrelationRecord) -> Dict[str, Any]:
    """Serialize a CorrelationRecord to its stored JSON shape."""
    return {
        "requestId": record.request_id,
        "response": record.response_text,
        "history": [entry.to_dict() for entry in record.history],
        "ttl": int(record.expires_at),
    }


def _dict_to_record(data: Dict[str, Any]) -> CorrelationRecord:
    """Build a CorrelationRecord from its stored JSON shape."""
    return CorrelationRecord(
        request_id=str(data["requestId"]),
        response_text=str(data["response"]),
        history=[HistoryEntry.from_dict(entry) for entry in data.get("history", [])],
        expires_at=float(data["ttl"]),
    )


class CorrelationStore:
    """Publishes turn results under their request id, with expiry.

    Each record is a single Redis value so its response text and history
    become visible together. Redis reclaims expired keys on its own; reads
    additionally treat a record past its ``ttl`` as absent.
    """

    def __init__(
        self,
        redis_crud: RedisCrudService,
        key_prefix: str = "correlation:",
        write_if_absent: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_crud
        self._prefix = key_prefix
        self._write_if_absent = write_if_absent
        self._clock = clock

    def _key(self, request_id: str) -> str:
        return f"{self._prefix}{request_id}"

    async def get(self, request_id: str) -> CorrelationRecord | None:
        """Load the record for request_id. Returns None if missing, expired or unreadable."""
        raw = await self._redis.get(self._key(request_id))
        if raw is None:
            return None
        try:
            record = _dict_to_record(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid correlation record for %s: %s", request_id, e)
            return None
        if record.is_expired(self._clock()):
            logger.debug("Correlation record %s has expired", request_id)
            return None
        return record

    async def put(
        self,
        request_id: str,
        response_text: str,
        history: Sequence[HistoryEntry],
        ttl_seconds: int,
    ) -> CorrelationRecord | None:
        """Write the record for request_id, expiring ttl_seconds from now.

        Returns the written record. In write-if-absent mode a record that
        already exists is kept and None is returned.

        Raises:
            CorrelationStoreError: The record could not be serialized or written.
        """
        record = CorrelationRecord(
            request_id=request_id,
            response_text=response_text,
            history=list(history),
            expires_at=self._clock() + ttl_seconds,
        )
        try:
            payload = json.dumps(_record_to_dict(record))
        except (TypeError, ValueError) as e:
            raise CorrelationStoreError(
                f"Correlation record serialization failed for {request_id}: {e}"
            ) from e

        key = self._key(request_id)
        if self._write_if_absent:
            written = await self._redis.set_if_absent(key, payload, ttl_seconds=ttl_seconds)
            if written is None:
                raise CorrelationStoreError(f"Correlation record write failed for {request_id}")
            if not written:
                logger.info("Correlation record %s already present; keeping first write", request_id)
                return None
            return record

        if not await self._redis.set(key, payload, ttl_seconds=ttl_seconds):
            raise CorrelationStoreError(f"Correlation record write failed for {request_id}")
        return record


def extend_history(
    history: Sequence[HistoryEntry], prompt: str, response_text: str
) -> List[HistoryEntry]:
    """Return history followed by this turn's user prompt and model reply."""
    return [
        *history,
        HistoryEntry(role=USER_ROLE, text=prompt),
        HistoryEntry(role=MODEL_ROLE, text=response_text),
    ]


# Lazy singleton for optional async init (connect to Redis)
_store_instance: CorrelationStore | None = None


async def get_correlation_store_async() -> CorrelationStore | None:
    """Return the correlation store after ensuring Redis is connected. Cached."""
    global _store_instance
    if _store_instance is not None:
        return _store_instance
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        return None
    try:
        await redis_crud.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Correlation store unavailable (Redis): %s", e)
        return None
    settings = get_settings()
    _store_instance = CorrelationStore(
        redis_crud=redis_crud,
        key_prefix=settings.correlation_key_prefix,
        write_if_absent=settings.correlation_write_if_absent,
    )
    return _store_instance


async def close_correlation_store() -> None:
    """Close the Redis connection used by the correlation store. Idempotent."""
    global _store_instance
    if _store_instance is not None:
        await _store_instance._redis.close()
        _store_instance = None
        logger.debug("Correlation store (Redis) closed")
