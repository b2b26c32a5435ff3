from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

USER_ROLE = "user"
MODEL_ROLE = "model"


@dataclass(frozen=True)
class HistoryEntry:
    """One side of a conversation turn."""

    role: str
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(role=str(data["role"]), text=str(data["text"]))


@dataclass(frozen=True)
class WorkItem:
    """A prompt submitted by the gateway for detached processing."""

    request_id: str
    session_id: str
    prompt: str
    prior_request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "sessionId": self.session_id,
            "prompt": self.prompt,
            "lastRequestId": self.prior_request_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        prior = data.get("lastRequestId") or data.get("priorRequestId")
        return cls(
            request_id=str(data["requestId"]),
            session_id=str(data.get("sessionId") or ""),
            prompt=str(data["prompt"]),
            prior_request_id=str(prior) if prior else None,
        )


@dataclass(frozen=True)
class CorrelationRecord:
    """The stored result of one turn, including the full conversation so far."""

    request_id: str
    response_text: str
    history: List[HistoryEntry] = field(default_factory=list)
    expires_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now
