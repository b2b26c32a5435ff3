"""Voice-platform turn envelopes: parsing inbound requests, building replies."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

LAUNCH_REQUEST = "LaunchRequest"
INTENT_REQUEST = "IntentRequest"

CATCH_ALL_INTENT = "CatchAll"
HELP_INTENT = "AMAZON.HelpIntent"
STOP_INTENT = "AMAZON.StopIntent"
CANCEL_INTENT = "AMAZON.CancelIntent"
FALLBACK_INTENT = "AMAZON.FallbackIntent"

REPROMPT_TEXT = "Is there anything else?"


class MalformedTurnError(ValueError):
    """The inbound envelope does not have the expected shape."""


@dataclass
class TurnRequest:
    """One inbound turn from the voice platform."""

    request_type: str
    session_id: str = ""
    intent_name: Optional[str] = None
    slot_value: Optional[str] = None
    session_attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "TurnRequest":
        """Parse the platform JSON envelope.

        Raises:
            MalformedTurnError: request type or session block is missing, or
                the slot value is not text.
        """
        try:
            request = event["request"]
            request_type = str(request["type"])
            session = event.get("session") or {}
            attributes = session.get("attributes") or {}
            if not isinstance(attributes, dict):
                raise TypeError("session attributes must be an object")
            intent = request.get("intent") or {}
            slots = intent.get("slots") or {}
            slot_value = (slots.get("text") or {}).get("value")
            if slot_value is not None and not isinstance(slot_value, str):
                raise TypeError("slot value must be text")
        except (KeyError, TypeError, AttributeError) as e:
            raise MalformedTurnError(f"Unrecognized turn envelope: {e}") from e

        return cls(
            request_type=request_type,
            session_id=str(session.get("sessionId") or ""),
            intent_name=intent.get("name"),
            slot_value=slot_value,
            session_attributes=dict(attributes),
        )


@dataclass
class TurnResponse:
    """The reply to one turn."""

    output_text: str
    should_end_session: bool = True
    session_attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Render the platform JSON reply.

        A reprompt accompanies the answer while the session stays open, and
        session attributes are only included when there are any.
        """
        payload: Dict[str, Any] = {
            "outputSpeech": {"type": "PlainText", "text": self.output_text},
            "shouldEndSession": self.should_end_session,
        }
        if not self.should_end_session:
            payload["reprompt"] = {
                "outputSpeech": {"type": "PlainText", "text": REPROMPT_TEXT},
            }

        response: Dict[str, Any] = {"version": "1.0", "response": payload}
        if self.session_attributes:
            response["sessionAttributes"] = dict(self.session_attributes)
        return response
