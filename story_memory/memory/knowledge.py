from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable
from uuid import uuid4

from loguru import logger
from pydantic import ValidationError

from story_memory.config.schema import AppConfigRoot
from story_memory.domain.models import CharacterKnowledgeState, utc_now
from story_memory.errors import GenerationFailure, ParseFailure, PersistenceFailure
from story_memory.llm.collaborator import (
    ACTION_UPDATE_CHARACTER_KNOWLEDGE,
    STORY_MEMORY_TARGET,
    GenerationCollaborator,
    GenerationRequest,
)
from story_memory.llm.factory import log_json_parse_failure
from story_memory.memory.flight import MemoryStatus, SingleFlight
from story_memory.memory.summarizer import project_context
from story_memory.project.store import ProjectStore
from story_memory.utils.json_utils import safe_load_json_dict

FAILED_TO_GENERATE = "Failed to update character knowledge"
INVALID_FORMAT = "Invalid knowledge state format"

_IDENTITY_KEYS = frozenset(
    {
        "id",
        "characterId",
        "character_id",
        "asOfChapterId",
        "as_of_chapter_id",
        "asOfChapterNumber",
        "as_of_chapter_number",
        "generatedAt",
        "generated_at",
    }
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _recency(state: CharacterKnowledgeState) -> tuple[int, datetime]:
    return state.as_of_chapter_number, _as_utc(state.generated_at)


def get_character_state(
    states: Iterable[CharacterKnowledgeState],
    character_id: str,
) -> CharacterKnowledgeState | None:
    """Latest snapshot for a character: highest chapter number, then newest, then last stored."""
    current: CharacterKnowledgeState | None = None
    for state in states:
        if state.character_id != character_id:
            continue
        if current is None or _recency(state) >= _recency(current):
            current = state
    return current


def latest_states(states: Iterable[CharacterKnowledgeState]) -> list[CharacterKnowledgeState]:
    """Latest snapshot per character id, in order of each id's first appearance."""
    latest: dict[str, CharacterKnowledgeState] = {}
    for state in states:
        current = latest.get(state.character_id)
        if current is None or _recency(state) >= _recency(current):
            latest[state.character_id] = state
    return list(latest.values())


def parse_knowledge_state(
    raw_text: str,
    *,
    character_id: str,
    chapter_id: str,
    chapter_number: int,
) -> CharacterKnowledgeState:
    try:
        payload = safe_load_json_dict(raw_text)
        fields = {key: value for key, value in payload.items() if key not in _IDENTITY_KEYS}
        return CharacterKnowledgeState.model_validate(
            {
                **fields,
                "id": f"knowledge_{character_id}_{chapter_number}_{uuid4().hex[:12]}",
                "characterId": character_id,
                "asOfChapterId": chapter_id,
                "asOfChapterNumber": chapter_number,
                "generatedAt": utc_now(),
            }
        )
    except (ValueError, ValidationError) as exc:
        raise ParseFailure(INVALID_FORMAT) from exc


async def update_character_knowledge(
    character_id: str,
    character_name: str,
    character_role: str | None,
    chapter_id: str,
    chapter_number: int,
    chapter_summary: str,
    character_experiences: str | None = None,
    new_information: str | None = None,
    *,
    store: ProjectStore,
    collaborator: GenerationCollaborator,
    flight: SingleFlight,
    status: MemoryStatus,
    config: AppConfigRoot,
) -> CharacterKnowledgeState | None:
    project = store.project
    log = logger.bind(
        project_id=project.id,
        action=ACTION_UPDATE_CHARACTER_KNOWLEDGE,
        chapter_id=chapter_id,
        chapter_number=chapter_number,
        character_id=character_id,
    )
    previous = get_character_state(project.character_knowledge_states, character_id)
    request = GenerationRequest(
        target=STORY_MEMORY_TARGET,
        action=ACTION_UPDATE_CHARACTER_KNOWLEDGE,
        context={
            **project_context(project),
            "characterId": character_id,
            "characterName": character_name,
            "characterRole": character_role,
            "previousKnowledgeState": previous.to_payload() if previous else None,
            "previousChapter": previous.as_of_chapter_number if previous else 0,
            "chapterId": chapter_id,
            "chapterNumber": chapter_number,
            "currentChapter": chapter_number,
            "chapterSummary": chapter_summary,
            "characterExperiences": character_experiences,
            "newInformation": new_information,
        },
    )

    try:
        async with flight.acquire(ACTION_UPDATE_CHARACTER_KNOWLEDGE, status) as abort:
            raw_text = await collaborator.generate(request, abort=abort)
            if raw_text is None:
                log.warning("Knowledge update returned no result")
                status.record_failure(GenerationFailure(FAILED_TO_GENERATE))
                return None

            try:
                state = parse_knowledge_state(
                    raw_text,
                    character_id=character_id,
                    chapter_id=chapter_id,
                    chapter_number=chapter_number,
                )
            except ParseFailure as exc:
                log_json_parse_failure(
                    config,
                    source="update_character_knowledge",
                    raw_text=raw_text,
                    exc=exc.__cause__ or exc,
                    context={
                        "project_id": project.id,
                        "action": ACTION_UPDATE_CHARACTER_KNOWLEDGE,
                        "chapter_id": chapter_id,
                        "character_id": character_id,
                    },
                )
                status.record_failure(exc)
                return None

            states = [*store.project.character_knowledge_states, state]
            await store.update_project(project.id, {"character_knowledge_states": states})
    except GenerationFailure as exc:
        log.warning("Knowledge update failed kind={} error={}", exc.kind, exc)
        status.record_failure(exc, FAILED_TO_GENERATE if exc.kind == "generation" else None)
        return None
    except PersistenceFailure as exc:
        log.warning("Knowledge snapshot not saved error={}", exc)
        status.record_failure(exc)
        return None

    log.info(
        "Knowledge snapshot appended state_id={} known_facts={} previous_chapter={}",
        state.id,
        len(state.known_facts),
        previous.as_of_chapter_number if previous else 0,
    )
    return state
