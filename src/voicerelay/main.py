import json
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Request

from .envelope import TurnResponse
from .gateway import UNAVAILABLE_TEXT, UNRECOGNIZED_TEXT, Gateway
from .logging_config import setup_logging
from .services.correlation_store import close_correlation_store, get_correlation_store_async
from .services.work_channel import close_work_channel, get_work_channel_async
from .settings import get_settings

settings = get_settings()
LOGGER = setup_logging("voicerelay", "server.log", settings.log_level, settings.log_dir)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the correlation store and work channel at startup; close them on shutdown."""
    app.state.gateway = None
    store = await get_correlation_store_async()
    channel = await get_work_channel_async()
    if store is not None and channel is not None:
        app.state.gateway = Gateway(
            store=store,
            channel=channel,
            poll_timeout=settings.poll_timeout_seconds,
            recall_poll_timeout=settings.recall_poll_timeout_seconds,
            poll_interval=settings.poll_interval_seconds,
        )
        LOGGER.info("Gateway ready")
    else:
        LOGGER.error("Gateway unavailable: Redis is not configured or unreachable")

    yield

    LOGGER.info("Shutting down...")
    await close_work_channel()
    await close_correlation_store()


app = FastAPI(
    title="Voice Relay Gateway",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)


@app.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Health check for load balancers and monitoring.

    Returns:
        dict[str, Any]: JSON response with status field.
    """
    ready = getattr(request.app.state, "gateway", None) is not None
    return {"status": "ok" if ready else "degraded"}


@app.post("/turn")
async def turn(request: Request) -> dict[str, Any]:
    """Answer one voice-platform turn.

    Always replies with a turn envelope; failures are phrased as speech,
    never as HTTP errors.

    Expected Input (JSON):
        {
            "request": {"type": str, "intent": {"name": str, "slots": {"text": {"value": str}}}},
            "session": {"sessionId": str, "attributes": dict}
        }
    """
    try:
        event = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        LOGGER.warning("Invalid turn payload (not JSON): %s", e)
        return TurnResponse(UNRECOGNIZED_TEXT, should_end_session=True).to_dict()
    if not isinstance(event, dict):
        return TurnResponse(UNRECOGNIZED_TEXT, should_end_session=True).to_dict()

    gateway: Gateway | None = getattr(request.app.state, "gateway", None)
    if gateway is None:
        return TurnResponse(UNAVAILABLE_TEXT, should_end_session=True).to_dict()
    try:
        return await gateway.handle_event(event)
    except Exception as e:
        LOGGER.exception("Unexpected error handling turn: %s", e)
        return TurnResponse(UNRECOGNIZED_TEXT, should_end_session=True).to_dict()


def serve() -> None:
    """Run the gateway with uvicorn on the configured host and port."""
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    serve()
