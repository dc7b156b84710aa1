from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator

from loguru import logger

from story_memory.errors import CollaboratorBusy, StoryMemoryError


class FlightState(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"


class SingleFlight:
    """At most one collaborator call at a time for a loaded project.

    A second acquisition while a call is running is refused with
    ``CollaboratorBusy``; it never queues.
    """

    def __init__(self) -> None:
        self._state = FlightState.IDLE
        self._action: str | None = None
        self._abort: asyncio.Event | None = None

    @property
    def state(self) -> FlightState:
        return self._state

    @property
    def action(self) -> str | None:
        return self._action

    @asynccontextmanager
    async def acquire(self, action: str, status: MemoryStatus | None = None) -> AsyncIterator[asyncio.Event]:
        """Hold the flight for ``action``.

        A refused acquisition leaves ``status`` alone; a granted one marks it
        processing until the flight is released.
        """
        if self._state is FlightState.IN_FLIGHT:
            raise CollaboratorBusy(action, self._action)

        abort = asyncio.Event()
        self._state = FlightState.IN_FLIGHT
        self._action = action
        self._abort = abort
        if status is not None:
            status.is_processing = True
            status.clear_error()
        try:
            yield abort
        finally:
            self._state = FlightState.IDLE
            self._action = None
            self._abort = None
            if status is not None:
                status.is_processing = False

    def cancel(self) -> bool:
        if self._abort is None:
            return False
        logger.bind(action=self._action or "-").info("Aborting in-flight collaborator call")
        self._abort.set()
        return True


@dataclass
class MemoryStatus:
    is_processing: bool = False
    last_summarized_chapter: str | None = None
    error: str | None = None
    error_kind: str | None = None

    def clear_error(self) -> None:
        self.error = None
        self.error_kind = None

    def record_failure(self, exc: StoryMemoryError, message: str | None = None) -> None:
        self.error = message or str(exc)
        self.error_kind = getattr(exc, "kind", "generation")
