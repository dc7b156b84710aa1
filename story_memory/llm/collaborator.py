from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

STORY_MEMORY_TARGET = "storyMemory"

ACTION_SUMMARIZE_CHAPTER = "summarize-chapter"
ACTION_UPDATE_CHARACTER_KNOWLEDGE = "update-character-knowledge"
ACTION_RETRIEVE_CONTEXT = "retrieve-context"


@dataclass(frozen=True)
class GenerationRequest:
    target: str
    action: str
    context: dict[str, Any] = field(default_factory=dict)


class GenerationCollaborator(Protocol):
    """Text generation service consumed by the memory components.

    Returns the completion text, or ``None`` when nothing usable came back.
    Implementations raise ``GenerationFailure`` on transport errors and
    ``GenerationCancelled`` once ``abort`` is set while the call is running.
    Any retry policy belongs to the implementation.
    """

    async def generate(self, request: GenerationRequest, *, abort: asyncio.Event | None = None) -> str | None: ...
