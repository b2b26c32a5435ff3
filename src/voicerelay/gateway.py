import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict

from .envelope import (
    CANCEL_INTENT,
    CATCH_ALL_INTENT,
    FALLBACK_INTENT,
    HELP_INTENT,
    INTENT_REQUEST,
    LAUNCH_REQUEST,
    STOP_INTENT,
    TurnRequest,
    TurnResponse,
)
from .models import WorkItem
from .services.correlation_store import CorrelationStore
from .services.work_channel import WorkChannel, WorkChannelError

logger = logging.getLogger(__name__)

LAST_REQUEST_ID = "lastRequestId"

WELCOME_TEXT = "Welcome to Voice Relay. You can ask me anything."
GOODBYE_TEXT = "Goodbye!"
HELP_TEXT = (
    "You can ask me any question, for example, 'ask what is the tallest "
    "building in the world'. If a response takes too long, you can say "
    "'what was the last response'. How can I help?"
)
FALLBACK_TEXT = (
    "Sorry, I'm not sure how to handle that. You can ask me a question, like "
    "'ask what is the capital of France'. For the last response, say 'what "
    "was the last response'. How can I help?"
)
NOTHING_TO_RECALL_TEXT = (
    "I don't have a recent request to look for. Please ask a question first."
)
NOT_READY_TEXT = (
    "I don't have a response for you yet. Please wait a moment and try again."
)
STILL_WORKING_TEXT = (
    "Your request is taking a moment. To hear the response, say 'what was "
    "the last response'."
)
SUBMIT_FAILED_TEXT = (
    "Sorry, I couldn't pass your question on right now. Please try asking again."
)
UNRECOGNIZED_TEXT = (
    "Sorry, I'm not sure how to handle that request. Please start again."
)
UNAVAILABLE_TEXT = "Sorry, I can't answer questions right now. Please try again later."

END_PHRASES = frozenset({"no", "thank you"})
HELP_PHRASES = frozenset({"help"})
LAST_RESPONSE_PHRASES = (
    "last response",
    "what was the last response",
    "get the last response",
    "what did you say",
    "can you repeat that",
    "say that again",
    "i am waiting",
    "so whats the answer",
    "get the answer",
    "still waiting",
    "go ahead",
    "okay waiting",
)


async def poll_for_response(
    store: CorrelationStore,
    request_id: str,
    timeout: float,
    interval: float = 0.5,
    clock: Callable[[], float] = time.monotonic,
) -> str | None:
    """Wait up to timeout seconds for the record of request_id to appear.

    Reads the store every interval seconds. Neither a read nor a sleep runs
    past the deadline; a read still pending at the deadline counts as a miss.
    Returns the response text, or None if nothing was published in time.
    """
    deadline = clock() + timeout
    while True:
        remaining = deadline - clock()
        if remaining <= 0:
            return None
        try:
            record = await asyncio.wait_for(store.get(request_id), remaining)
        except asyncio.TimeoutError:
            logger.warning("Store read for %s outlived the poll deadline", request_id)
            return None
        if record is not None:
            return record.response_text
        remaining = deadline - clock()
        if remaining <= 0:
            return None
        await asyncio.sleep(min(interval, remaining))


def is_last_response_phrase(utterance: str) -> bool:
    return any(phrase in utterance for phrase in LAST_RESPONSE_PHRASES)


class Gateway:
    """Answers voice turns within the platform deadline.

    New questions are queued for the worker and then polled for; if the
    answer is late, the caller keeps ``lastRequestId`` in its session and
    can fetch it on a later turn.
    """

    def __init__(
        self,
        store: CorrelationStore,
        channel: WorkChannel,
        poll_timeout: float = 7.0,
        recall_poll_timeout: float = 2.5,
        poll_interval: float = 0.5,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._store = store
        self._channel = channel
        self._poll_timeout = poll_timeout
        self._recall_poll_timeout = recall_poll_timeout
        self._poll_interval = poll_interval
        self._new_id = id_factory

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Handle a raw platform envelope and return the platform reply."""
        try:
            request = TurnRequest.from_event(event)
        except ValueError as e:
            logger.warning("Rejecting turn: %s", e)
            return TurnResponse(UNRECOGNIZED_TEXT, should_end_session=True).to_dict()
        response = await self.handle_turn(request)
        return response.to_dict()

    async def handle_turn(self, request: TurnRequest) -> TurnResponse:
        """Route one turn through the conversation state machine."""
        attributes = dict(request.session_attributes)

        if request.request_type == LAUNCH_REQUEST:
            return TurnResponse(WELCOME_TEXT, False, attributes)

        if request.request_type == INTENT_REQUEST:
            intent = request.intent_name
            if intent == CATCH_ALL_INTENT and request.slot_value is not None:
                return await self._handle_utterance(request, attributes)
            if intent == HELP_INTENT:
                return TurnResponse(HELP_TEXT, False, attributes)
            if intent in (STOP_INTENT, CANCEL_INTENT):
                return TurnResponse(GOODBYE_TEXT, True, {})
            if intent == FALLBACK_INTENT:
                return TurnResponse(FALLBACK_TEXT, False, attributes)

        logger.info(
            "Unrecognized turn type=%s intent=%s session=%s",
            request.request_type,
            request.intent_name,
            request.session_id,
        )
        return TurnResponse(UNRECOGNIZED_TEXT, True, {})

    async def _handle_utterance(
        self, request: TurnRequest, attributes: Dict[str, Any]
    ) -> TurnResponse:
        utterance = (request.slot_value or "").strip().lower()

        if utterance in END_PHRASES:
            return TurnResponse(GOODBYE_TEXT, True, {})
        if is_last_response_phrase(utterance):
            return await self._recall(attributes)
        if utterance in HELP_PHRASES:
            return TurnResponse(HELP_TEXT, False, attributes)
        return await self._ask(request.session_id, utterance, attributes)

    async def _recall(self, attributes: Dict[str, Any]) -> TurnResponse:
        last_request_id = attributes.get(LAST_REQUEST_ID)
        if not last_request_id:
            return TurnResponse(NOTHING_TO_RECALL_TEXT, False, attributes)

        response_text = await poll_for_response(
            self._store,
            last_request_id,
            timeout=self._recall_poll_timeout,
            interval=self._poll_interval,
        )
        if response_text is None:
            logger.info("Recall of %s: not ready yet", last_request_id)
            return TurnResponse(NOT_READY_TEXT, False, attributes)
        return TurnResponse(response_text, False, attributes)

    async def _ask(
        self, session_id: str, prompt: str, attributes: Dict[str, Any]
    ) -> TurnResponse:
        request_id = self._new_id()
        item = WorkItem(
            request_id=request_id,
            session_id=session_id,
            prompt=prompt,
            prior_request_id=attributes.get(LAST_REQUEST_ID) or None,
        )
        try:
            await self._channel.submit(item)
        except WorkChannelError as e:
            logger.error("Submitting %s failed: %s", request_id, e)
            return TurnResponse(SUBMIT_FAILED_TEXT, False, attributes)

        logger.info(
            "Submitted %s (prior=%s, session=%s)",
            request_id,
            item.prior_request_id,
            session_id,
        )
        response_text = await poll_for_response(
            self._store,
            request_id,
            timeout=self._poll_timeout,
            interval=self._poll_interval,
        )

        attributes[LAST_REQUEST_ID] = request_id
        if response_text is None:
            logger.info("Request %s still processing at deadline", request_id)
            return TurnResponse(STILL_WORKING_TEXT, False, attributes)
        return TurnResponse(response_text, False, attributes)
