from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Sequence

from loguru import logger

from story_memory.domain.models import Chapter, ChapterSummary, CharacterKnowledgeState, MemoryModel, Project
from story_memory.errors import InvalidProjectFieldError, PersistenceFailure, ProjectNotFoundError

# Field name -> item type accepted by update_project.
WRITABLE_FIELDS: dict[str, type[MemoryModel]] = {
    "chapter_summaries": ChapterSummary,
    "character_knowledge_states": CharacterKnowledgeState,
    "chapters": Chapter,
}

ProjectPersister = Callable[[str, dict[str, list[dict[str, Any]]]], Awaitable[None]]


class ProjectStore:
    """In-memory project aggregate with a single whole-array write path.

    ``update_project`` replaces collections on the loaded project before it
    awaits anything, so readers on the same event loop see the new arrays
    immediately. The optional persister receives JSON-ready payloads; when it
    fails the replaced arrays are put back and ``PersistenceFailure`` is raised.
    """

    def __init__(self, project: Project, persist: ProjectPersister | None = None):
        self._project = project
        self._persist = persist

    @property
    def project(self) -> Project:
        return self._project

    def _apply(self, fields: Mapping[str, Sequence[MemoryModel]]) -> dict[str, list[MemoryModel]]:
        applied: dict[str, list[MemoryModel]] = {}
        for name, values in fields.items():
            item_type = WRITABLE_FIELDS.get(name)
            if item_type is None:
                raise InvalidProjectFieldError(name)
            items = list(values)
            for item in items:
                if not isinstance(item, item_type):
                    raise TypeError(f"{name} expects {item_type.__name__} items, got {type(item).__name__}")
            applied[name] = items
        return applied

    async def update_project(self, project_id: str, fields: Mapping[str, Sequence[MemoryModel]]) -> None:
        if project_id != self._project.id:
            raise ProjectNotFoundError(project_id)

        log = logger.bind(project_id=project_id)
        applied = self._apply(fields)
        previous = {name: getattr(self._project, name) for name in applied}
        for name, items in applied.items():
            setattr(self._project, name, items)

        log.debug(
            "Project updated fields={}",
            ",".join(f"{name}[{len(items)}]" for name, items in applied.items()),
        )

        if self._persist is None:
            return

        payload = {name: [item.to_payload() for item in items] for name, items in applied.items()}
        try:
            await self._persist(project_id, payload)
        except asyncio.CancelledError:
            self._restore(previous, applied)
            raise
        except Exception as exc:
            self._restore(previous, applied)
            log.warning("Project persist failed fields={} error={}", ",".join(applied), exc)
            raise PersistenceFailure(f"Failed to save project {project_id}: {exc}") from exc

    def _restore(self, previous: dict[str, list[MemoryModel]], applied: dict[str, list[MemoryModel]]) -> None:
        # Only fields still holding this write's arrays; a later write wins.
        for name, items in applied.items():
            if getattr(self._project, name) is items:
                setattr(self._project, name, previous[name])
