from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from story_memory.config.schema import AppConfigRoot
from story_memory.domain.models import Project
from story_memory.llm.collaborator import GenerationRequest
from story_memory.memory.flight import FlightState, SingleFlight


class FakeCollaborator:
    """Scripted collaborator: each call consumes the next response.

    A response may be a string, ``None``, an exception to raise, or an async
    callable receiving ``(request, abort)``.
    """

    def __init__(self, responses: list[Any] | None = None, flight: SingleFlight | None = None):
        self.responses = list(responses or [])
        self.requests: list[GenerationRequest] = []
        self.flight = flight
        self.max_in_flight_seen = 0
        self._running = 0

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def generate(self, request: GenerationRequest, *, abort: asyncio.Event | None = None) -> str | None:
        self.requests.append(request)
        if self.flight is not None:
            assert self.flight.state is FlightState.IN_FLIGHT
        if not self.responses:
            raise AssertionError(f"unexpected collaborator call: {request.action}")

        item = self.responses.pop(0)
        self._running += 1
        self.max_in_flight_seen = max(self.max_in_flight_seen, self._running)
        try:
            await asyncio.sleep(0)
            if isinstance(item, BaseException):
                raise item
            if callable(item):
                return await item(request, abort)
            return item
        finally:
            self._running -= 1


def _chapter_text(words: int, seed: str = "word") -> str:
    return " ".join(f"{seed}{index % 7}" for index in range(words))


def build_project(**overrides: Any) -> Project:
    data: dict[str, Any] = {
        "id": "proj-1",
        "name": "The Glass Orchard",
        "specification": {
            "workingTitle": "The Glass Orchard",
            "genre": ["fantasy", "mystery"],
            "pov": "Third Limited",
            "tense": "Past",
        },
        "characters": [
            {"id": "char-mira", "name": "Mira Vale", "aliases": ["Mira", "The Gardener"], "role": "protagonist"},
            {"id": "char-tomas", "name": "Tomas Reed", "aliases": ["Tom"], "role": "supporting"},
            {"id": "char-oren", "name": "Oren", "aliases": [], "role": "antagonist"},
        ],
        "chapters": [
            {
                "id": f"ch-{number}",
                "number": number,
                "title": f"Chapter {number}",
                "content": _chapter_text(620 if number == 5 else 300 + number * 10),
                "wordCount": 620 if number == 5 else 300 + number * 10,
            }
            for number in range(1, 6)
        ],
        "factAssertions": [
            {"id": "fact-1", "subjectId": "char-mira", "assertion": "Mira can hear the glass trees sing"},
            {"id": "fact-2", "subjectId": "orchard", "assertion": "The orchard only grows at night"},
        ],
        "worldbuildingEntries": [
            {"id": "wiki-1", "category": "location", "name": "Glass Orchard", "description": "Trees of blown glass"},
        ],
        "subplots": [
            {"id": "sub-1", "name": "The missing key", "status": "active"},
            {"id": "sub-2", "name": "Old debt", "status": "resolved"},
            {"id": "sub-3", "name": "Tomas's letter", "status": "developing"},
            {"id": "sub-4", "name": "Abandoned well", "status": "abandoned"},
        ],
    }
    data.update(overrides)
    return Project.model_validate(data)


@pytest.fixture
def config() -> AppConfigRoot:
    return AppConfigRoot()


@pytest.fixture
def project() -> Project:
    return build_project()


@pytest.fixture
def make_project() -> Callable[..., Project]:
    return build_project


@pytest.fixture
def make_collaborator() -> type[FakeCollaborator]:
    return FakeCollaborator
