from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from story_memory.config.schema import AppConfigRoot
from story_memory.domain.models import (
    Chapter,
    ChapterSummary,
    CharacterKnowledgeState,
    ContextRequest,
    Project,
    StoryMemoryContext,
)
from story_memory.llm.collaborator import GenerationCollaborator
from story_memory.memory import knowledge, retrieval, summarizer
from story_memory.memory.flight import MemoryStatus, SingleFlight
from story_memory.project.store import ProjectStore


class AutoSummarizeOutcome(str, Enum):
    SKIPPED_SHORT = "skipped_short"
    SKIPPED_FRESH = "skipped_fresh"
    SUMMARIZED = "summarized"
    FAILED = "failed"


@dataclass
class ChapterSaveReport:
    outcome: AutoSummarizeOutcome
    knowledge_updates: list[CharacterKnowledgeState] = field(default_factory=list)


def relative_change(current: int, recorded: int) -> float:
    return abs(current - recorded) / max(recorded, 1)


class StoryMemoryService:
    """Story memory for one loaded project.

    Owns the single-flight guard and the status record; every collaborator
    call made through this service goes through the same guard.
    """

    def __init__(
        self,
        store: ProjectStore,
        collaborator: GenerationCollaborator,
        config: AppConfigRoot,
        flight: SingleFlight | None = None,
    ):
        self.store = store
        self.collaborator = collaborator
        self.config = config
        self.flight = flight or SingleFlight()
        self.status = MemoryStatus()

    @property
    def project(self) -> Project:
        return self.store.project

    def get_summary_for_chapter(self, chapter_id: str) -> ChapterSummary | None:
        return self.project.summary_for_chapter(chapter_id)

    def get_character_state(self, character_id: str) -> CharacterKnowledgeState | None:
        return knowledge.get_character_state(self.project.character_knowledge_states, character_id)

    def cancel(self) -> bool:
        return self.flight.cancel()

    async def summarize_chapter(
        self,
        chapter_id: str,
        chapter_number: int,
        chapter_title: str,
        chapter_content: str,
        *,
        source_word_count: int | None = None,
    ) -> ChapterSummary | None:
        return await summarizer.summarize_chapter(
            chapter_id,
            chapter_number,
            chapter_title,
            chapter_content,
            store=self.store,
            collaborator=self.collaborator,
            flight=self.flight,
            status=self.status,
            config=self.config,
            source_word_count=source_word_count,
        )

    async def update_character_knowledge(
        self,
        character_id: str,
        character_name: str,
        character_role: str | None,
        chapter_id: str,
        chapter_number: int,
        chapter_summary: str,
        character_experiences: str | None = None,
        new_information: str | None = None,
    ) -> CharacterKnowledgeState | None:
        return await knowledge.update_character_knowledge(
            character_id,
            character_name,
            character_role,
            chapter_id,
            chapter_number,
            chapter_summary,
            character_experiences,
            new_information,
            store=self.store,
            collaborator=self.collaborator,
            flight=self.flight,
            status=self.status,
            config=self.config,
        )

    def build_basic_context(self, request: ContextRequest) -> StoryMemoryContext:
        return retrieval.build_basic_context(request, self.project, self.config.memory)

    async def get_relevant_context(self, request: ContextRequest) -> StoryMemoryContext:
        return await retrieval.get_relevant_context(
            request,
            store=self.store,
            collaborator=self.collaborator,
            flight=self.flight,
            config=self.config,
        )

    async def auto_summarize_on_save(self, chapter: Chapter) -> AutoSummarizeOutcome:
        log = logger.bind(project_id=self.project.id, chapter_id=chapter.id, chapter_number=chapter.number)
        memory_cfg = self.config.memory

        if len(chapter.content) < memory_cfg.min_content_chars:
            log.debug("Skip summary: content too short chars={}", len(chapter.content))
            return AutoSummarizeOutcome.SKIPPED_SHORT

        current_words = chapter.effective_word_count
        existing = self.get_summary_for_chapter(chapter.id)
        if existing is not None:
            change = relative_change(current_words, existing.recorded_word_count)
            if change < memory_cfg.staleness_threshold:
                log.debug(
                    "Skip summary: unchanged words={} recorded={} change={:.3f}",
                    current_words,
                    existing.recorded_word_count,
                    change,
                )
                return AutoSummarizeOutcome.SKIPPED_FRESH

        summary = await self.summarize_chapter(
            chapter.id,
            chapter.number,
            chapter.title,
            chapter.content,
            source_word_count=current_words,
        )
        if summary is None:
            return AutoSummarizeOutcome.FAILED
        return AutoSummarizeOutcome.SUMMARIZED

    async def update_all_characters_after_chapter(self, chapter: Chapter) -> list[CharacterKnowledgeState]:
        log = logger.bind(project_id=self.project.id, chapter_id=chapter.id, chapter_number=chapter.number)
        summary = self.get_summary_for_chapter(chapter.id)
        if summary is None:
            log.debug("Skip knowledge updates: chapter has no summary")
            return []

        present = summary.characters_present
        characters = [
            character
            for character in self.project.characters
            if any(character.answers_to(name) for name in present)
        ]
        log.info("Updating knowledge for {} character(s)", len(characters))

        updates: list[CharacterKnowledgeState] = []
        # One at a time: the collaborator takes a single call at once.
        for character in characters:
            state = await self.update_character_knowledge(
                character.id,
                character.name,
                character.role,
                chapter.id,
                chapter.number,
                summary.summary,
            )
            if state is not None:
                updates.append(state)
        return updates

    async def on_chapter_saved(self, chapter: Chapter) -> ChapterSaveReport:
        outcome = await self.auto_summarize_on_save(chapter)
        report = ChapterSaveReport(outcome=outcome)
        if outcome is AutoSummarizeOutcome.SUMMARIZED:
            report.knowledge_updates = await self.update_all_characters_after_chapter(chapter)
        return report
