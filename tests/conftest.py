import sys
from pathlib import Path
from typing import Dict, List

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from voicerelay.services.correlation_store import CorrelationStore  # noqa: E402
from voicerelay.services.work_channel import WorkChannel  # noqa: E402


class InMemoryRedisCrud:
    """In-memory stand-in for RedisCrudService with the same list semantics."""

    def __init__(self) -> None:
        self.values: Dict[str, str] = {}
        self.ttls: Dict[str, int | None] = {}
        self.lists: Dict[str, List[str]] = {}
        self.hashes: Dict[str, Dict[str, int]] = {}

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        self.values[key] = value
        self.ttls[key] = ttl_seconds
        return True

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool | None:
        if key in self.values:
            return False
        return await self.set(key, value, ttl_seconds)

    async def push(self, name: str, value: str) -> bool:
        self.lists.setdefault(name, []).insert(0, value)
        return True

    async def move(self, source: str, destination: str, timeout: float | None = None) -> str | None:
        items = self.lists.get(source)
        if not items:
            return None
        value = items.pop()
        self.lists.setdefault(destination, []).insert(0, value)
        return value

    async def remove(self, name: str, value: str) -> bool:
        items = self.lists.get(name, [])
        if value in items:
            items.remove(value)
        return True

    async def requeue(self, source: str, destination: str, value: str) -> bool:
        await self.remove(source, value)
        return await self.push(destination, value)

    async def items(self, name: str) -> List[str]:
        return list(self.lists.get(name, []))

    async def increment(self, name: str, field: str) -> int | None:
        counts = self.hashes.setdefault(name, {})
        counts[field] = counts.get(field, 0) + 1
        return counts[field]

    async def delete_field(self, name: str, field: str) -> bool:
        self.hashes.get(name, {}).pop(field, None)
        return True

    async def close(self) -> None:
        return None


class FakeClock:
    """Settable wall clock for expiry tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def fake_redis() -> InMemoryRedisCrud:
    return InMemoryRedisCrud()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(fake_redis: InMemoryRedisCrud) -> CorrelationStore:
    """CorrelationStore backed by the in-memory Redis double."""
    return CorrelationStore(redis_crud=fake_redis)  # type: ignore[arg-type]


@pytest.fixture
def channel(fake_redis: InMemoryRedisCrud) -> WorkChannel:
    """WorkChannel backed by the in-memory Redis double, three deliveries max."""
    return WorkChannel(redis_crud=fake_redis, queue_name="test", max_deliveries=3)  # type: ignore[arg-type]
