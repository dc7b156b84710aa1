from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import ValidationError

from story_memory.config.schema import AppConfigRoot
from story_memory.domain.hashing import content_hash
from story_memory.domain.models import ChapterSummary, Project, count_words, utc_now
from story_memory.errors import GenerationFailure, ParseFailure, PersistenceFailure
from story_memory.llm.collaborator import (
    ACTION_SUMMARIZE_CHAPTER,
    STORY_MEMORY_TARGET,
    GenerationCollaborator,
    GenerationRequest,
)
from story_memory.llm.factory import log_json_parse_failure
from story_memory.memory.flight import MemoryStatus, SingleFlight
from story_memory.project.store import ProjectStore
from story_memory.utils.json_utils import safe_load_json_dict

FAILED_TO_GENERATE = "Failed to generate summary"
INVALID_FORMAT = "Invalid summary format"

_IDENTITY_KEYS = frozenset(
    {
        "id",
        "chapterId",
        "chapter_id",
        "chapterNumber",
        "chapter_number",
        "sourceWordCount",
        "source_word_count",
        "generatedAt",
        "generated_at",
    }
)


def project_context(project: Project) -> dict[str, Any]:
    return {
        "specification": project.specification,
        "characters": [character.to_payload() for character in project.characters],
    }


def summary_id(chapter_id: str, chapter_content: str) -> str:
    return f"summary_{chapter_id}_{content_hash(chapter_id, chapter_content)[:12]}"


def parse_summary(
    raw_text: str,
    *,
    chapter_id: str,
    chapter_number: int,
    chapter_content: str,
    source_word_count: int,
) -> ChapterSummary:
    try:
        payload = safe_load_json_dict(raw_text)
        fields = {key: value for key, value in payload.items() if key not in _IDENTITY_KEYS}
        return ChapterSummary.model_validate(
            {
                **fields,
                "id": summary_id(chapter_id, chapter_content),
                "chapterId": chapter_id,
                "chapterNumber": chapter_number,
                "sourceWordCount": source_word_count,
                "generatedAt": utc_now(),
            }
        )
    except (ValueError, ValidationError) as exc:
        raise ParseFailure(INVALID_FORMAT) from exc


async def summarize_chapter(
    chapter_id: str,
    chapter_number: int,
    chapter_title: str,
    chapter_content: str,
    *,
    store: ProjectStore,
    collaborator: GenerationCollaborator,
    flight: SingleFlight,
    status: MemoryStatus,
    config: AppConfigRoot,
    source_word_count: int | None = None,
) -> ChapterSummary | None:
    """Summarize one chapter and replace any previous summary for it.

    Returns ``None`` and leaves the store unchanged when the collaborator
    fails, answers with something that is not a summary object, or the
    project cannot be saved.
    """
    project = store.project
    log = logger.bind(
        project_id=project.id,
        action=ACTION_SUMMARIZE_CHAPTER,
        chapter_id=chapter_id,
        chapter_number=chapter_number,
    )
    request = GenerationRequest(
        target=STORY_MEMORY_TARGET,
        action=ACTION_SUMMARIZE_CHAPTER,
        context={
            **project_context(project),
            "chapterId": chapter_id,
            "chapterNumber": chapter_number,
            "chapterTitle": chapter_title,
            "chapterContent": chapter_content,
        },
    )

    try:
        async with flight.acquire(ACTION_SUMMARIZE_CHAPTER, status) as abort:
            raw_text = await collaborator.generate(request, abort=abort)
            if raw_text is None:
                log.warning("Chapter summary generation returned no result")
                status.record_failure(GenerationFailure(FAILED_TO_GENERATE))
                return None

            try:
                summary = parse_summary(
                    raw_text,
                    chapter_id=chapter_id,
                    chapter_number=chapter_number,
                    chapter_content=chapter_content,
                    source_word_count=count_words(chapter_content) if source_word_count is None else source_word_count,
                )
            except ParseFailure as exc:
                log_json_parse_failure(
                    config,
                    source="summarize_chapter",
                    raw_text=raw_text,
                    exc=exc.__cause__ or exc,
                    context={"project_id": project.id, "action": ACTION_SUMMARIZE_CHAPTER, "chapter_id": chapter_id},
                )
                status.record_failure(exc)
                return None

            # Re-read after the await.
            summaries = [item for item in store.project.chapter_summaries if item.chapter_id != chapter_id]
            summaries.append(summary)
            await store.update_project(project.id, {"chapter_summaries": summaries})
    except GenerationFailure as exc:
        log.warning("Chapter summary generation failed kind={} error={}", exc.kind, exc)
        status.record_failure(exc, FAILED_TO_GENERATE if exc.kind == "generation" else None)
        return None
    except PersistenceFailure as exc:
        log.warning("Chapter summary not saved error={}", exc)
        status.record_failure(exc)
        return None

    status.last_summarized_chapter = chapter_id
    log.info(
        "Chapter summarized summary_id={} key_events={} characters_present={}",
        summary.id,
        len(summary.key_events),
        len(summary.characters_present),
    )
    return summary
