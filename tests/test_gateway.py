import asyncio
import time
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

from voicerelay.envelope import TurnRequest
from voicerelay.gateway import (
    FALLBACK_TEXT,
    GOODBYE_TEXT,
    HELP_TEXT,
    NOT_READY_TEXT,
    NOTHING_TO_RECALL_TEXT,
    STILL_WORKING_TEXT,
    SUBMIT_FAILED_TEXT,
    UNRECOGNIZED_TEXT,
    WELCOME_TEXT,
    Gateway,
    is_last_response_phrase,
    poll_for_response,
)
from voicerelay.services.correlation_store import CorrelationStore, extend_history
from voicerelay.services.work_channel import WorkChannel, WorkChannelError
from voicerelay.worker import Worker

POLL_TIMEOUT = 0.3
RECALL_TIMEOUT = 0.1
INTERVAL = 0.02


class StaticCompletion:
    def __init__(self, answer: str) -> None:
        self.answer = answer

    async def complete(self, prompt, history) -> str:
        return self.answer


def _gateway(store: CorrelationStore, channel: WorkChannel, ids=None) -> Gateway:
    ids = iter(ids or ["req-A", "req-B", "req-C"])
    return Gateway(
        store=store,
        channel=channel,
        poll_timeout=POLL_TIMEOUT,
        recall_poll_timeout=RECALL_TIMEOUT,
        poll_interval=INTERVAL,
        id_factory=lambda: next(ids),
    )


def _utterance(text: str, attributes: Dict[str, Any] | None = None) -> TurnRequest:
    return TurnRequest(
        request_type="IntentRequest",
        session_id="sess-1",
        intent_name="CatchAll",
        slot_value=text,
        session_attributes=dict(attributes or {}),
    )


def _intent(name: str, attributes: Dict[str, Any] | None = None) -> TurnRequest:
    return TurnRequest(
        request_type="IntentRequest",
        session_id="sess-1",
        intent_name=name,
        session_attributes=dict(attributes or {}),
    )


@pytest.mark.asyncio
async def test_launch_greets_without_queueing(store, channel, fake_redis) -> None:
    gateway = _gateway(store, channel)
    response = await gateway.handle_turn(TurnRequest(request_type="LaunchRequest"))
    assert response.output_text == WELCOME_TEXT
    assert response.should_end_session is False
    assert channel.pending_key not in fake_redis.lists


@pytest.mark.asyncio
@pytest.mark.parametrize("phrase", ["no", "Thank You", "  no  "])
async def test_end_phrase_clears_session(store, channel, phrase: str) -> None:
    gateway = _gateway(store, channel)
    response = await gateway.handle_turn(_utterance(phrase, {"lastRequestId": "req-0"}))
    assert response.output_text == GOODBYE_TEXT
    assert response.should_end_session is True
    assert response.session_attributes == {}
    assert "sessionAttributes" not in response.to_dict()


@pytest.mark.asyncio
@pytest.mark.parametrize("intent", ["AMAZON.StopIntent", "AMAZON.CancelIntent"])
async def test_stop_intents_end_session(store, channel, intent: str) -> None:
    response = await _gateway(store, channel).handle_turn(_intent(intent, {"lastRequestId": "x"}))
    assert response.output_text == GOODBYE_TEXT
    assert response.should_end_session is True
    assert response.session_attributes == {}


@pytest.mark.asyncio
async def test_help_keeps_session(store, channel) -> None:
    gateway = _gateway(store, channel)
    for request in (_utterance("help", {"lastRequestId": "r"}), _intent("AMAZON.HelpIntent", {"lastRequestId": "r"})):
        response = await gateway.handle_turn(request)
        assert response.output_text == HELP_TEXT
        assert response.should_end_session is False
        assert response.session_attributes == {"lastRequestId": "r"}


@pytest.mark.asyncio
async def test_fallback_intent_keeps_session(store, channel) -> None:
    response = await _gateway(store, channel).handle_turn(_intent("AMAZON.FallbackIntent"))
    assert response.output_text == FALLBACK_TEXT
    assert response.should_end_session is False


@pytest.mark.asyncio
async def test_recall_without_last_request(store, channel) -> None:
    response = await _gateway(store, channel).handle_turn(_utterance("what was the last response"))
    assert response.output_text == NOTHING_TO_RECALL_TEXT
    assert response.should_end_session is False


@pytest.mark.asyncio
async def test_recall_returns_stored_answer(store, channel) -> None:
    await store.put("req-0", "Paris", extend_history([], "q", "Paris"), ttl_seconds=60)
    attributes = {"lastRequestId": "req-0"}
    response = await _gateway(store, channel).handle_turn(_utterance("Say that again please", attributes))
    assert response.output_text == "Paris"
    assert response.should_end_session is False
    assert response.session_attributes == attributes


@pytest.mark.asyncio
async def test_recall_not_ready_uses_short_timeout(store, channel) -> None:
    attributes = {"lastRequestId": "req-0"}
    started = time.monotonic()
    response = await _gateway(store, channel).handle_turn(_utterance("still waiting", attributes))
    elapsed = time.monotonic() - started
    assert response.output_text == NOT_READY_TEXT
    assert response.session_attributes == attributes
    assert elapsed < POLL_TIMEOUT


@pytest.mark.asyncio
async def test_new_question_is_queued_with_prior_reference(store, channel) -> None:
    gateway = _gateway(store, channel)
    response = await gateway.handle_turn(_utterance("And Germany?", {"lastRequestId": "req-0"}))

    [delivery] = await channel.receive(wait_seconds=0)
    assert delivery.item.request_id == "req-A"
    assert delivery.item.prompt == "and germany?"
    assert delivery.item.session_id == "sess-1"
    assert delivery.item.prior_request_id == "req-0"
    assert response.session_attributes == {"lastRequestId": "req-A"}


@pytest.mark.asyncio
async def test_new_question_answered_within_deadline(store, channel) -> None:
    """An answer published while the gateway polls is returned directly."""
    worker = Worker(store, channel, StaticCompletion("Paris"))

    async def answer_soon() -> None:
        await asyncio.sleep(0.05)
        for delivery in await channel.receive(wait_seconds=0):
            await worker.process_item(delivery.item)

    task = asyncio.create_task(answer_soon())
    response = await _gateway(store, channel).handle_turn(_utterance("What is the capital of France?"))
    await task

    assert response.output_text == "Paris"
    assert response.should_end_session is False
    assert response.session_attributes == {"lastRequestId": "req-A"}


@pytest.mark.asyncio
async def test_deadline_respected_when_worker_never_answers(store, channel) -> None:
    started = time.monotonic()
    response = await _gateway(store, channel).handle_turn(_utterance("tell me a long story"))
    elapsed = time.monotonic() - started

    assert response.output_text == STILL_WORKING_TEXT
    assert response.should_end_session is False
    assert response.session_attributes == {"lastRequestId": "req-A"}
    assert elapsed < POLL_TIMEOUT + 0.2


@pytest.mark.asyncio
async def test_submit_failure_is_spoken_and_session_unchanged(store) -> None:
    channel = MagicMock(spec=WorkChannel)
    channel.submit = AsyncMock(side_effect=WorkChannelError("down"))
    attributes = {"lastRequestId": "req-0"}
    response = await _gateway(store, channel).handle_turn(_utterance("hello", attributes))
    assert response.output_text == SUBMIT_FAILED_TEXT
    assert response.should_end_session is False
    assert response.session_attributes == attributes


@pytest.mark.asyncio
async def test_unrecognized_turns_end_session(store, channel) -> None:
    gateway = _gateway(store, channel)
    for request in (
        TurnRequest(request_type="SessionEndedRequest", session_attributes={"lastRequestId": "x"}),
        _intent("SomeOtherIntent", {"lastRequestId": "x"}),
        _intent("CatchAll", {"lastRequestId": "x"}),  # no slot value
    ):
        response = await gateway.handle_turn(request)
        assert response.output_text == UNRECOGNIZED_TEXT
        assert response.should_end_session is True
        assert response.session_attributes == {}


@pytest.mark.asyncio
async def test_handle_event_rejects_malformed_envelope(store, channel) -> None:
    reply = await _gateway(store, channel).handle_event({"session": {}})
    assert reply["response"]["outputSpeech"]["text"] == UNRECOGNIZED_TEXT
    assert reply["response"]["shouldEndSession"] is True
    assert "sessionAttributes" not in reply


@pytest.mark.asyncio
async def test_slow_answer_then_recall_scenario(store, channel) -> None:
    """Ask, time out, let the worker finish, then recall the answer."""
    gateway = _gateway(store, channel)

    first = await gateway.handle_turn(_utterance("What is the capital of France?"))
    assert first.output_text == STILL_WORKING_TEXT
    assert first.session_attributes == {"lastRequestId": "req-A"}

    [delivery] = await channel.receive(wait_seconds=0)
    assert delivery.item.prior_request_id is None
    worker = Worker(store, channel, StaticCompletion("Paris"))
    await worker.process_batch([delivery])

    record = await store.get("req-A")
    assert record is not None
    assert record.response_text == "Paris"

    started = time.monotonic()
    second = await gateway.handle_turn(_utterance("what was the last response", first.session_attributes))
    assert time.monotonic() - started < INTERVAL * 2
    assert second.output_text == "Paris"
    assert second.should_end_session is False
    assert second.session_attributes == {"lastRequestId": "req-A"}


@pytest.mark.asyncio
async def test_poll_for_response_returns_none_at_deadline(store) -> None:
    started = time.monotonic()
    assert await poll_for_response(store, "missing", timeout=0.1, interval=0.5) is None
    assert time.monotonic() - started < 0.3


@pytest.mark.asyncio
async def test_poll_for_response_retries_until_present(store) -> None:
    store_get = AsyncMock(side_effect=[None, None, MagicMock(response_text="done")])
    fake_store = MagicMock(spec=CorrelationStore)
    fake_store.get = store_get
    assert await poll_for_response(fake_store, "r", timeout=1.0, interval=0.01) == "done"
    assert store_get.await_count == 3


def test_last_response_phrases_match_as_substrings() -> None:
    assert is_last_response_phrase("okay so whats the answer")
    assert is_last_response_phrase("can you repeat that")
    assert not is_last_response_phrase("what is the weather")


@pytest.mark.asyncio
async def test_handle_event_rejects_non_text_slot_value(store, channel, fake_redis) -> None:
    event = {
        "request": {
            "type": "IntentRequest",
            "intent": {"name": "CatchAll", "slots": {"text": {"value": 42}}},
        },
        "session": {"sessionId": "sess-1", "attributes": {"lastRequestId": "x"}},
    }
    reply = await _gateway(store, channel).handle_event(event)
    assert reply["response"]["outputSpeech"]["text"] == UNRECOGNIZED_TEXT
    assert reply["response"]["shouldEndSession"] is True
    assert "sessionAttributes" not in reply
    assert fake_redis.lists.get(channel.pending_key, []) == []


class SlowStore:
    """Store whose reads stall far longer than any poll deadline."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.reads = 0

    async def get(self, request_id: str):
        self.reads += 1
        await asyncio.sleep(self.delay)
        return MagicMock(response_text="too late")


@pytest.mark.asyncio
async def test_poll_for_response_bounds_a_stalled_read() -> None:
    slow = SlowStore(delay=2.0)
    started = time.monotonic()
    assert await poll_for_response(slow, "r", timeout=0.2, interval=0.05) is None  # type: ignore[arg-type]
    assert time.monotonic() - started < 0.5
    assert slow.reads == 1


@pytest.mark.asyncio
async def test_stalled_store_does_not_hold_the_turn(channel) -> None:
    slow = SlowStore(delay=2.0)
    gateway = _gateway(slow, channel)  # type: ignore[arg-type]
    started = time.monotonic()
    response = await gateway.handle_turn(_utterance("what is the capital of France"))
    assert time.monotonic() - started < POLL_TIMEOUT + 0.3
    assert response.output_text == STILL_WORKING_TEXT
    assert response.session_attributes == {"lastRequestId": "req-A"}
