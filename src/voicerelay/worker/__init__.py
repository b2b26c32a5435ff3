"""Worker package: drains queued prompts and publishes answers.

The worker chases each item's back-reference to rebuild conversation
history, asks the completion service for a reply and stores the extended
history under the item's request id.
"""

from .completion import (
    CompletionError,
    OpenAICompletionService,
    get_completion_service,
    resolve_api_key,
)
from .worker import Worker

__all__ = [
    "CompletionError",
    "OpenAICompletionService",
    "Worker",
    "get_completion_service",
    "resolve_api_key",
]
