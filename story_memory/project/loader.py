from __future__ import annotations

from pathlib import Path

import orjson
from loguru import logger

from story_memory.config.schema import AppConfigRoot
from story_memory.domain.models import Chapter, Project, count_words
from story_memory.llm.collaborator import GenerationCollaborator
from story_memory.llm.factory import ChatGenerationClient
from story_memory.memory.service import StoryMemoryService
from story_memory.project.store import ProjectStore
from story_memory.storage.db import session_scope
from story_memory.storage.repo import SQLAlchemyRepo, persist_project_fields
from story_memory.storage.types import InsertResult, ProjectListRow


def read_project_file(input_path: Path) -> Project:
    payload = orjson.loads(input_path.read_bytes())
    if not isinstance(payload, dict):
        raise ValueError(f"Project file must hold a JSON object: {input_path}")
    return Project.model_validate(payload)


async def import_project(input_path: Path) -> InsertResult:
    project = read_project_file(input_path)
    async with session_scope() as session:
        result = await SQLAlchemyRepo(session).create_project(project)

    logger.bind(project_id=project.id).info(
        "Project imported inserted={} chapters={} summaries={} knowledge_states={}",
        result.inserted,
        len(project.chapters),
        len(project.chapter_summaries),
        len(project.character_knowledge_states),
    )
    return result


async def list_projects() -> list[ProjectListRow]:
    async with session_scope() as session:
        return await SQLAlchemyRepo(session).list_projects()


async def load_project_store(project_id: str) -> ProjectStore:
    async with session_scope() as session:
        project = await SQLAlchemyRepo(session).get_project(project_id)
    return ProjectStore(project, persist=persist_project_fields)


def build_memory_service(
    store: ProjectStore,
    config: AppConfigRoot,
    collaborator: GenerationCollaborator | None = None,
) -> StoryMemoryService:
    if collaborator is None:
        collaborator = ChatGenerationClient(config)
    return StoryMemoryService(store, collaborator, config)


async def replace_chapter_content(store: ProjectStore, chapter_id: str, content: str) -> Chapter:
    """Swap in new chapter text through the project write path and return the saved chapter."""
    project = store.project
    chapter = project.find_chapter(chapter_id)
    if chapter is None:
        raise ValueError(f"Chapter not found: {chapter_id}")

    updated = chapter.model_copy(update={"content": content, "word_count": count_words(content)})
    chapters = [updated if item.id == chapter_id else item for item in project.chapters]
    await store.update_project(project.id, {"chapters": chapters})
    return updated
