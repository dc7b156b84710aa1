from __future__ import annotations

import asyncio
from typing import Any

import orjson
import pytest

from story_memory.domain.models import (
    ChapterSummary,
    CharacterKnowledgeState,
    ContextRequest,
    FactAssertion,
    WikiEntry,
)
from story_memory.errors import GenerationFailure
from story_memory.llm.prompts import render_prompts
from story_memory.memory.flight import SingleFlight
from story_memory.memory.retrieval import build_basic_context, build_inventory, get_relevant_context
from story_memory.project.store import ProjectStore


def _summary(number: int, questions: list[str] | None = None, setups: list[str] | None = None) -> ChapterSummary:
    return ChapterSummary.model_validate(
        {
            "id": f"summary_ch-{number}",
            "chapterId": f"ch-{number}",
            "chapterNumber": number,
            "summary": f"Events of chapter {number}",
            "openQuestions": questions or [],
            "foreshadowing": setups or [],
        }
    )


def _state(state_id: str, character_id: str, chapter_number: int) -> CharacterKnowledgeState:
    return CharacterKnowledgeState(
        id=state_id,
        character_id=character_id,
        as_of_chapter_id=f"ch-{chapter_number}",
        as_of_chapter_number=chapter_number,
    )


@pytest.fixture
def rich_project(make_project):
    project = make_project()
    project.chapter_summaries = [
        _summary(1, ["Who planted the orchard?"], ["A crack in the glass"]),
        _summary(2, ["Who planted the orchard?", "Where is the key?"], ["A crack in the glass", "The bell"]),
        _summary(3, ["Q3a", "Q3b", "Q3c"], ["S3a", "S3b"]),
        _summary(4, ["Q4a", "Q4b"], ["S4a", "S4b", "S4c"]),
        _summary(6, ["future question"], ["future setup"]),
    ]
    project.character_knowledge_states = [
        _state("k-m1", "char-mira", 1),
        _state("k-t2", "char-tomas", 2),
        _state("k-m3", "char-mira", 3),
    ]
    project.fact_assertions = [FactAssertion(id=f"fact-{index}", assertion=f"fact {index}") for index in range(30)]
    project.worldbuilding_entries = [WikiEntry(id=f"wiki-{index}", name=f"entry {index}") for index in range(15)]
    return project


def _request(chapter: int = 5, **kwargs: Any) -> ContextRequest:
    return ContextRequest(current_chapter_number=chapter, **kwargs)


def test_basic_context_is_bounded_and_ordered(rich_project, config) -> None:
    context = build_basic_context(_request(), rich_project, config.memory)

    assert [item.chapter_number for item in context.relevant_summaries] == [4, 3, 2]
    assert [state.id for state in context.relevant_character_states] == ["k-m3", "k-t2"]
    assert len(context.relevant_facts) == 20
    assert context.relevant_facts[0].id == "fact-0"
    assert len(context.relevant_worldbuilding) == 10
    assert [item.id for item in context.active_subplots] == ["sub-1", "sub-3"]
    assert context.open_questions == ["Q4a", "Q4b", "Q3a", "Q3b", "Q3c"]
    assert context.unresolved_setups == ["S4a", "S4b", "S4c", "S3a", "S3b"]
    assert context.recent_emotional_beats == []
    assert context.pov_character_constraints is None


def test_basic_context_deduplicates_and_excludes_future_chapters(rich_project, config) -> None:
    context = build_basic_context(_request(chapter=2), rich_project, config.memory)

    assert [item.chapter_number for item in context.relevant_summaries] == [2, 1]
    assert context.open_questions == ["Who planted the orchard?", "Where is the key?"]
    assert context.unresolved_setups == ["A crack in the glass", "The bell"]


def test_basic_context_on_empty_project(make_project, config) -> None:
    context = build_basic_context(_request(), make_project(factAssertions=[], worldbuildingEntries=[], subplots=[]), config.memory)

    assert context.is_empty()


@pytest.mark.parametrize("size", [0, 1, 50, 400])
def test_basic_context_bounds_hold_for_any_store_size(make_project, config, size: int) -> None:
    project = make_project()
    project.chapter_summaries = [
        _summary(number, [f"q{number}-{i}" for i in range(4)], [f"s{number}-{i}" for i in range(4)])
        for number in range(1, size + 1)
    ]
    project.fact_assertions = [FactAssertion(id=f"f{index}") for index in range(size)]
    project.worldbuilding_entries = [WikiEntry(id=f"w{index}") for index in range(size)]

    context = build_basic_context(_request(chapter=size + 1), project, config.memory)

    assert len(context.relevant_summaries) <= 3
    assert len(context.relevant_facts) <= 20
    assert len(context.relevant_worldbuilding) <= 10
    assert len(context.open_questions) <= 5
    assert len(context.unresolved_setups) <= 5
    assert context.recent_emotional_beats == []


def _retrieve(project, config, collaborator, request=None):
    return asyncio.run(
        get_relevant_context(
            request or _request(pov_character_id="char-mira", task_description="Write the door scene"),
            store=ProjectStore(project),
            collaborator=collaborator,
            flight=SingleFlight(),
            config=config,
        )
    )


@pytest.mark.parametrize(
    "response",
    [None, "totally not json", "[]", GenerationFailure("boom")],
    ids=["null", "unparsable", "array", "failure"],
)
def test_failures_degrade_to_basic_context(rich_project, config, make_collaborator, response) -> None:
    request = _request(pov_character_id="char-mira")
    expected = build_basic_context(request, rich_project, config.memory)

    context = _retrieve(rich_project, config, make_collaborator([response]), request)

    assert context == expected


def test_busy_flight_degrades_to_basic_context(rich_project, config, make_collaborator) -> None:
    collaborator = make_collaborator([])
    flight = SingleFlight()
    request = _request()

    async def _run():
        async with flight.acquire("summarize-chapter"):
            return await get_relevant_context(
                request,
                store=ProjectStore(rich_project),
                collaborator=collaborator,
                flight=flight,
                config=config,
            )

    context = asyncio.run(_run())

    assert context == build_basic_context(request, rich_project, config.memory)
    assert collaborator.calls == 0


def test_selection_materializes_known_ids_in_stored_order(rich_project, config, make_collaborator) -> None:
    selection = {
        "relevantSummaryIds": ["ch-4", "ch-404", "ch-1"],
        "relevantCharacterStateIds": ["char-mira", "char-ghost"],
        "relevantFactIds": ["fact-7", "fact-2", "fact-99"],
        "relevantWorldbuildingIds": ["wiki-3"],
        "activeSubplotIds": ["sub-2", "sub-3", "sub-1"],
        "openQuestions": ["Where is the key?", " Where is the key? ", ""],
        "recentEmotionalBeats": ["Mira is afraid"],
        "unresolvedSetups": None,
        "povCharacterConstraints": {"cannotKnow": ["Tomas wrote the letter"], "emotionalState": "uneasy"},
        "reasoning": "Door scene needs the key thread.",
    }
    collaborator = make_collaborator([orjson.dumps(selection).decode("utf-8")])

    context = _retrieve(rich_project, config, collaborator)

    assert [item.chapter_id for item in context.relevant_summaries] == ["ch-1", "ch-4"]
    assert [state.id for state in context.relevant_character_states] == ["k-m3"]
    assert [item.id for item in context.relevant_facts] == ["fact-2", "fact-7"]
    assert [item.id for item in context.relevant_worldbuilding] == ["wiki-3"]
    assert [item.id for item in context.active_subplots] == ["sub-1", "sub-3"]
    assert context.open_questions == ["Where is the key?"]
    assert context.recent_emotional_beats == ["Mira is afraid"]
    assert context.unresolved_setups == []
    assert context.pov_character_constraints is not None
    assert context.pov_character_constraints.cannot_know == ["Tomas wrote the letter"]
    assert context.pov_character_constraints.must_remember == []


def test_inventory_annotates_latest_states_and_request(rich_project, config, make_collaborator) -> None:
    collaborator = make_collaborator(["{}"])

    context = _retrieve(rich_project, config, collaborator)

    request = collaborator.requests[0]
    assert request.action == "retrieve-context"
    inventory = request.context
    assert inventory["povCharacter"] == "Mira Vale"
    assert inventory["taskDescription"] == "Write the door scene"
    assert inventory["currentChapter"] == 5
    assert [item["chapterId"] for item in inventory["availableSummaries"]] == ["ch-1", "ch-2", "ch-3", "ch-4", "ch-6"]
    assert [(item["id"], item["characterName"]) for item in inventory["availableCharacterStates"]] == [
        ("k-m3", "Mira Vale"),
        ("k-t2", "Tomas Reed"),
    ]
    assert [item["id"] for item in inventory["activeSubplots"]] == ["sub-1", "sub-3"]
    assert [item["id"] for item in inventory["availableFacts"]] == [f"fact-{index}" for index in range(30)]
    assert len(inventory["worldbuildingEntries"]) == 15
    assert inventory["inventoryMaxFacts"] == config.memory.inventory_max_facts
    assert context.is_empty()


def test_rendered_inventory_caps_facts_and_worldbuilding(rich_project, config) -> None:
    inventory = build_inventory(_request(), rich_project, config.memory)

    _, user = render_prompts("storyMemory", "retrieve-context", inventory)

    assert f"### Facts ({config.memory.inventory_max_facts})" in user
    assert f"[fact-{config.memory.inventory_max_facts - 1}]" in user
    assert f"[fact-{config.memory.inventory_max_facts}]" not in user
    assert f"### Worldbuilding Entries ({config.memory.inventory_max_worldbuilding})" in user
    assert "[wiki-14]" not in user
