from __future__ import annotations

from typing import Any, Iterable

from loguru import logger
from pydantic import ValidationError

from story_memory.config.schema import AppConfigRoot, MemoryConfig
from story_memory.domain.models import ContextRequest, ContextSelection, Project, StoryMemoryContext
from story_memory.errors import GenerationFailure
from story_memory.llm.collaborator import (
    ACTION_RETRIEVE_CONTEXT,
    STORY_MEMORY_TARGET,
    GenerationCollaborator,
    GenerationRequest,
)
from story_memory.llm.factory import log_json_parse_failure
from story_memory.memory.flight import SingleFlight
from story_memory.memory.knowledge import latest_states
from story_memory.memory.summarizer import project_context
from story_memory.project.store import ProjectStore
from story_memory.utils.json_utils import safe_load_json_dict


def _dedupe(values: Iterable[str], limit: int) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        text = value.strip()
        if not text or text in seen:
            continue
        seen.add(text)
        result.append(text)
        if len(result) >= limit:
            break
    return result


def build_basic_context(request: ContextRequest, project: Project, config: MemoryConfig) -> StoryMemoryContext:
    """Deterministic context: recent summaries plus bounded slices of every store."""
    eligible = [item for item in project.chapter_summaries if item.chapter_number <= request.current_chapter_number]
    eligible.sort(key=lambda item: item.chapter_number, reverse=True)
    summaries = eligible[: config.recent_summaries]

    return StoryMemoryContext(
        relevant_summaries=summaries,
        relevant_character_states=latest_states(project.character_knowledge_states),
        relevant_facts=project.fact_assertions[: config.max_facts],
        relevant_worldbuilding=project.worldbuilding_entries[: config.max_worldbuilding],
        active_subplots=project.active_subplots(),
        open_questions=_dedupe(
            (question for item in summaries for question in item.open_questions),
            config.max_open_questions,
        ),
        recent_emotional_beats=[],
        unresolved_setups=_dedupe(
            (str(element) for item in summaries for element in item.foreshadowing),
            config.max_unresolved_setups,
        ),
        pov_character_constraints=None,
    )


def build_inventory(request: ContextRequest, project: Project, config: MemoryConfig) -> dict[str, Any]:
    names = {character.id: character.name for character in project.characters}
    pov = project.find_character(request.pov_character_id) if request.pov_character_id else None

    return {
        **project_context(project),
        "currentChapter": request.current_chapter_number,
        "currentScene": request.current_scene,
        "povCharacter": pov.name if pov else request.pov_character_id,
        "taskDescription": request.task_description,
        "focus": request.focus,
        "inventorySummaryChars": config.inventory_summary_chars,
        "inventoryMaxFacts": config.inventory_max_facts,
        "inventoryMaxWorldbuilding": config.inventory_max_worldbuilding,
        "availableSummaries": [
            {"chapterId": item.chapter_id, "chapterNumber": item.chapter_number, "summary": item.summary}
            for item in project.chapter_summaries
        ],
        "availableCharacterStates": [
            {**state.to_payload(), "characterName": names.get(state.character_id, state.character_id)}
            for state in latest_states(project.character_knowledge_states)
        ],
        "availableFacts": [item.to_payload() for item in project.fact_assertions],
        "activeSubplots": [item.to_payload() for item in project.active_subplots()],
        "worldbuildingEntries": [item.to_payload() for item in project.worldbuilding_entries],
    }


def materialize_selection(selection: ContextSelection, project: Project, config: MemoryConfig) -> StoryMemoryContext:
    """Resolve selected ids against local stores; unknown ids are dropped."""
    summary_ids = set(selection.relevant_summary_ids)
    character_ids = set(selection.relevant_character_state_ids)
    fact_ids = set(selection.relevant_fact_ids)
    wiki_ids = set(selection.relevant_worldbuilding_ids)
    subplot_ids = set(selection.active_subplot_ids)

    return StoryMemoryContext(
        relevant_summaries=[item for item in project.chapter_summaries if item.chapter_id in summary_ids],
        relevant_character_states=[
            state for state in latest_states(project.character_knowledge_states) if state.character_id in character_ids
        ],
        relevant_facts=[item for item in project.fact_assertions if item.id in fact_ids],
        relevant_worldbuilding=[item for item in project.worldbuilding_entries if item.id in wiki_ids],
        active_subplots=[item for item in project.active_subplots() if item.id in subplot_ids],
        open_questions=_dedupe(selection.open_questions, config.max_open_questions),
        recent_emotional_beats=_dedupe(selection.recent_emotional_beats, config.max_emotional_beats),
        unresolved_setups=_dedupe(selection.unresolved_setups, config.max_unresolved_setups),
        pov_character_constraints=selection.pov_character_constraints,
    )


async def get_relevant_context(
    request: ContextRequest,
    *,
    store: ProjectStore,
    collaborator: GenerationCollaborator,
    flight: SingleFlight,
    config: AppConfigRoot,
) -> StoryMemoryContext:
    """Ask the collaborator which memory matters; fall back to the basic context on any failure."""
    project = store.project
    log = logger.bind(
        project_id=project.id,
        action=ACTION_RETRIEVE_CONTEXT,
        chapter_number=request.current_chapter_number,
    )
    generation = GenerationRequest(
        target=STORY_MEMORY_TARGET,
        action=ACTION_RETRIEVE_CONTEXT,
        context=build_inventory(request, project, config.memory),
    )

    try:
        async with flight.acquire(ACTION_RETRIEVE_CONTEXT) as abort:
            raw_text = await collaborator.generate(generation, abort=abort)
    except GenerationFailure as exc:
        log.warning("Context retrieval failed kind={} error={}; using basic context", exc.kind, exc)
        return build_basic_context(request, store.project, config.memory)

    if raw_text is None:
        log.warning("Context retrieval returned no result; using basic context")
        return build_basic_context(request, store.project, config.memory)

    try:
        selection = ContextSelection.model_validate(safe_load_json_dict(raw_text))
    except (ValueError, ValidationError) as exc:
        log_json_parse_failure(
            config,
            source="get_relevant_context",
            raw_text=raw_text,
            exc=exc,
            context={"project_id": project.id, "action": ACTION_RETRIEVE_CONTEXT},
        )
        return build_basic_context(request, store.project, config.memory)

    context = materialize_selection(selection, store.project, config.memory)
    log.info(
        "Context selected summaries={} character_states={} facts={} reasoning={}",
        len(context.relevant_summaries),
        len(context.relevant_character_states),
        len(context.relevant_facts),
        selection.reasoning or "-",
    )
    return context
