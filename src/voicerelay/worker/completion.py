import asyncio
import logging
from typing import Any, Dict, List, Sequence

from openai import AsyncOpenAI

from ..models import MODEL_ROLE, USER_ROLE, HistoryEntry
from ..settings import get_settings

logger = logging.getLogger(__name__)

_ROLE_MAP = {MODEL_ROLE: "assistant", USER_ROLE: "user"}


class CompletionError(RuntimeError):
    """The completion service returned no usable answer."""


def resolve_api_key() -> str:
    """Return the completion API key from settings or the configured secret file.

    Raises:
        ValueError: Neither OPENAI_API_KEY nor a readable OPENAI_API_KEY_FILE is set.
    """
    settings = get_settings()
    if settings.openai_api_key:
        return settings.openai_api_key
    if settings.openai_api_key_file is not None:
        try:
            key = settings.openai_api_key_file.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ValueError(
                f"Cannot read API key file {settings.openai_api_key_file}: {e}"
            ) from e
        if key:
            return key
    raise ValueError("No completion API key configured (OPENAI_API_KEY or OPENAI_API_KEY_FILE)")


def build_messages(
    prompt: str, history: Sequence[HistoryEntry], system_instruction: str
) -> List[Dict[str, str]]:
    """Build chat messages: system instruction, prior turns, then the new prompt."""
    messages: List[Dict[str, str]] = [{"role": "system", "content": system_instruction}]
    for entry in history:
        messages.append({"role": _ROLE_MAP.get(entry.role, "user"), "content": entry.text})
    messages.append({"role": "user", "content": prompt})
    return messages


class OpenAICompletionService:
    """The completion capability: prompt plus history in, response text out."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        system_instruction: str,
        temperature: float = 0.7,
    ) -> None:
        self._client = client
        self._model = model
        self._system_instruction = system_instruction
        self._temperature = temperature

    async def complete(
        self,
        prompt: str,
        history: Sequence[HistoryEntry],
        system_instruction: str | None = None,
    ) -> str:
        """Return the model's reply to prompt given the conversation history.

        API errors (rate limits, timeouts) propagate to the caller; an empty
        reply raises CompletionError so it is never published.
        """
        messages = build_messages(
            prompt, history, system_instruction or self._system_instruction
        )
        logger.debug("Completion request: %d history entries", len(history))
        response: Any = await self._client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=self._temperature,
        )
        text = (response.choices[0].message.content or "").strip()
        if not text:
            raise CompletionError("Completion returned no text")
        return text


_completion_service: OpenAICompletionService | None = None
_completion_lock = asyncio.Lock()


async def get_completion_service() -> OpenAICompletionService:
    """Return the process-wide completion service, creating it on first use.

    The API key is resolved once per process. Concurrent first callers wait
    on a lock, and the instance is rechecked under it so it is built once.
    """
    global _completion_service
    if _completion_service is not None:
        return _completion_service
    async with _completion_lock:
        if _completion_service is None:
            settings = get_settings()
            client = AsyncOpenAI(
                api_key=resolve_api_key(),
                base_url=settings.openai_base_url,
                timeout=settings.completion_timeout_seconds,
            )
            _completion_service = OpenAICompletionService(
                client=client,
                model=settings.model,
                system_instruction=settings.system_instruction,
                temperature=settings.temperature,
            )
            logger.info("Completion client initialized (model=%s)", settings.model)
    return _completion_service
