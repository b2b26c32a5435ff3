import asyncio
import signal

from ..logging_config import setup_logging
from ..services.correlation_store import close_correlation_store, get_correlation_store_async
from ..services.work_channel import close_work_channel, get_work_channel_async
from ..settings import get_settings
from .completion import get_completion_service
from .worker import Worker

settings = get_settings()
LOGGER = setup_logging("voicerelay", "worker.log", settings.log_level, settings.log_dir)


async def run_worker() -> None:
    """Connect to Redis and the completion API, then process work until signalled."""
    store = await get_correlation_store_async()
    channel = await get_work_channel_async()
    if store is None or channel is None:
        raise RuntimeError("Redis is not configured or unreachable (REDIS_URL)")

    worker = Worker(
        store=store,
        channel=channel,
        completion=await get_completion_service(),
        record_ttl_seconds=settings.record_ttl_seconds,
        batch_size=settings.worker_batch_size,
        wait_seconds=settings.worker_wait_seconds,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await worker.run(stop)
    finally:
        await close_work_channel()
        await close_correlation_store()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
