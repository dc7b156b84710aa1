from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import orjson

from story_memory.domain.models import CharacterKnowledgeState
from story_memory.memory.flight import MemoryStatus, SingleFlight
from story_memory.memory.knowledge import get_character_state, latest_states, update_character_knowledge
from story_memory.project.store import ProjectStore

_T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _state(state_id: str, character_id: str, chapter_number: int, minutes: int = 0) -> CharacterKnowledgeState:
    return CharacterKnowledgeState(
        id=state_id,
        character_id=character_id,
        as_of_chapter_id=f"ch-{chapter_number}",
        as_of_chapter_number=chapter_number,
        generated_at=_T0 + timedelta(minutes=minutes),
    )


def _knowledge_json(**overrides) -> str:
    payload = {
        "knownFacts": ["The key opens the glass door [NEW]"],
        "beliefs": ["Tomas can be trusted"],
        "secrets": None,
        "relationships": {"char-tomas": "wary ally"},
        "emotionalState": "anxious",
        "activeGoals": ["Find the door"],
        "recentExperiences": ["Found the key"],
        "changesFromPrevious": {"factsLearned": ["The key exists"], "beliefsChanged": [{"old": "a", "new": "b", "reason": "c"}]},
    }
    payload.update(overrides)
    return orjson.dumps(payload).decode("utf-8")


def test_get_character_state_picks_highest_chapter_number() -> None:
    states = [
        _state("k1", "char-mira", 3),
        _state("k2", "char-mira", 5),
        _state("k3", "char-tomas", 7),
        _state("k4", "char-mira", 4, minutes=30),
    ]

    assert get_character_state(states, "char-mira").id == "k2"
    assert get_character_state(states, "char-tomas").id == "k3"
    assert get_character_state(states, "char-nobody") is None
    assert get_character_state([], "char-mira") is None


def test_get_character_state_breaks_ties_by_time_then_position() -> None:
    newer_first = [_state("late", "char-mira", 5, minutes=10), _state("early", "char-mira", 5, minutes=1)]
    assert get_character_state(newer_first, "char-mira").id == "late"

    same_time = [_state("first", "char-mira", 5), _state("second", "char-mira", 5)]
    assert get_character_state(same_time, "char-mira").id == "second"


def test_get_character_state_handles_naive_timestamps() -> None:
    naive = _state("naive", "char-mira", 5).model_copy(update={"generated_at": datetime(2024, 5, 1, 13, 0)})
    aware = _state("aware", "char-mira", 5)

    assert get_character_state([aware, naive], "char-mira").id == "naive"


def test_latest_states_keeps_first_appearance_order() -> None:
    states = [
        _state("t1", "char-tomas", 1),
        _state("m1", "char-mira", 1),
        _state("t2", "char-tomas", 2),
    ]

    assert [state.id for state in latest_states(states)] == ["t2", "m1"]


def test_update_appends_snapshot_and_sends_previous_state(project, config, make_collaborator) -> None:
    previous = _state("k-prev", "char-mira", 3)
    project.character_knowledge_states = [previous, _state("k-tom", "char-tomas", 4)]
    store = ProjectStore(project)
    status = MemoryStatus()
    collaborator = make_collaborator([_knowledge_json(characterId="spoofed", asOfChapterNumber=1)])

    state = asyncio.run(
        update_character_knowledge(
            "char-mira",
            "Mira Vale",
            "protagonist",
            "ch-5",
            5,
            "Mira finds the key.",
            store=store,
            collaborator=collaborator,
            flight=SingleFlight(),
            status=status,
            config=config,
        )
    )

    assert state is not None
    assert state.character_id == "char-mira"
    assert state.as_of_chapter_id == "ch-5"
    assert state.as_of_chapter_number == 5
    assert state.id.startswith("knowledge_char-mira_5_")
    assert state.secrets == []
    assert state.relationships == {"char-tomas": "wary ally"}
    assert state.changes_from_previous is not None
    assert state.changes_from_previous.beliefs_changed[0].reason == "c"

    stored = store.project.character_knowledge_states
    assert [item.id for item in stored] == ["k-prev", "k-tom", state.id]
    assert stored[0] is previous
    assert get_character_state(stored, "char-mira") is state

    context = collaborator.requests[0].context
    assert collaborator.requests[0].action == "update-character-knowledge"
    assert context["previousKnowledgeState"]["id"] == "k-prev"
    assert context["previousChapter"] == 3
    assert context["currentChapter"] == 5
    assert context["chapterSummary"] == "Mira finds the key."
    assert context["characterName"] == "Mira Vale"


def test_first_update_has_no_previous_state(project, config, make_collaborator) -> None:
    store = ProjectStore(project)
    collaborator = make_collaborator([_knowledge_json()])

    asyncio.run(
        update_character_knowledge(
            "char-oren",
            "Oren",
            None,
            "ch-1",
            1,
            "Oren watches.",
            store=store,
            collaborator=collaborator,
            flight=SingleFlight(),
            status=MemoryStatus(),
            config=config,
        )
    )

    context = collaborator.requests[0].context
    assert context["previousKnowledgeState"] is None
    assert context["previousChapter"] == 0


def test_snapshot_count_never_decreases_on_failures(project, config, make_collaborator) -> None:
    store = ProjectStore(project)
    status = MemoryStatus()
    collaborator = make_collaborator([_knowledge_json(), "{broken", None, _knowledge_json()])

    async def _run():
        counts = []
        for chapter_number in (1, 2, 3, 4):
            await update_character_knowledge(
                "char-mira",
                "Mira Vale",
                "protagonist",
                f"ch-{chapter_number}",
                chapter_number,
                "events",
                store=store,
                collaborator=collaborator,
                flight=SingleFlight(),
                status=status,
                config=config,
            )
            counts.append(len(store.project.character_knowledge_states))
        return counts

    counts = asyncio.run(_run())

    assert counts == [1, 1, 1, 2]
    assert status.error is None
    assert [state.as_of_chapter_number for state in store.project.character_knowledge_states] == [1, 4]


def test_parse_failure_records_knowledge_format_error(project, config, make_collaborator) -> None:
    store = ProjectStore(project)
    status = MemoryStatus()

    state = asyncio.run(
        update_character_knowledge(
            "char-mira",
            "Mira Vale",
            "protagonist",
            "ch-2",
            2,
            "events",
            store=store,
            collaborator=make_collaborator(["I cannot answer that"]),
            flight=SingleFlight(),
            status=status,
            config=config,
        )
    )

    assert state is None
    assert status.error == "Invalid knowledge state format"
    assert status.error_kind == "parse"
    assert store.project.character_knowledge_states == []
