from __future__ import annotations

from typing import Any

import orjson
from sqlalchemy import delete, select, text as sa_text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from story_memory.storage.projects.base import DOCUMENT_COLUMNS, ProjectDocument
from story_memory.storage.types import InsertResult, ProjectListRow, ProjectRow


def _to_row(project: ProjectDocument) -> ProjectRow:
    return ProjectRow(
        id=str(project.id),
        name=str(project.name or ""),
        specification_json=str(project.specification_json),
        characters_json=str(project.characters_json),
        chapters_json=str(project.chapters_json),
        fact_assertions_json=str(project.fact_assertions_json),
        worldbuilding_entries_json=str(project.worldbuilding_entries_json),
        subplots_json=str(project.subplots_json),
        chapter_summaries_json=str(project.chapter_summaries_json),
        character_knowledge_states_json=str(project.character_knowledge_states_json),
        updated_at=project.updated_at,
    )


def _json_len(value: str) -> int:
    try:
        decoded = orjson.loads(value)
    except orjson.JSONDecodeError:
        return 0
    return len(decoded) if isinstance(decoded, list) else 0


def encode_documents(fields: dict[str, Any]) -> dict[str, str]:
    """Map project field names to JSON column values."""
    documents: dict[str, str] = {}
    for name, value in fields.items():
        column = DOCUMENT_COLUMNS.get(name)
        if column is None:
            raise KeyError(name)
        documents[column] = orjson.dumps(value).decode("utf-8")
    return documents


async def upsert_project(
    session: AsyncSession,
    *,
    project_id: str,
    name: str,
    documents: dict[str, str],
) -> InsertResult:
    existing = await session.execute(select(ProjectDocument.id).where(ProjectDocument.id == project_id))
    existing_id = existing.scalar_one_or_none()

    stmt = (
        sqlite_insert(ProjectDocument)
        .values(id=project_id, name=name, **documents)
        .on_conflict_do_update(
            index_elements=[ProjectDocument.id],
            set_={"name": name, **documents, "updated_at": sa_text("CURRENT_TIMESTAMP")},
        )
    )
    await session.execute(stmt)
    return InsertResult(id=project_id, inserted=(existing_id is None))


async def get_project(session: AsyncSession, project_id: str) -> ProjectRow | None:
    result = await session.execute(select(ProjectDocument).where(ProjectDocument.id == project_id))
    project = result.scalar_one_or_none()
    if project is None:
        return None
    return _to_row(project)


async def list_projects(session: AsyncSession) -> list[ProjectListRow]:
    result = await session.execute(
        select(
            ProjectDocument.id,
            ProjectDocument.name,
            ProjectDocument.chapters_json,
            ProjectDocument.chapter_summaries_json,
            ProjectDocument.character_knowledge_states_json,
            ProjectDocument.updated_at,
        ).order_by(ProjectDocument.updated_at.desc(), ProjectDocument.id)
    )
    return [
        ProjectListRow(
            id=str(row[0]),
            name=str(row[1] or ""),
            chapters=_json_len(row[2]),
            chapter_summaries=_json_len(row[3]),
            character_knowledge_states=_json_len(row[4]),
            updated_at=row[5],
        )
        for row in result.all()
    ]


async def update_documents(session: AsyncSession, project_id: str, documents: dict[str, str]) -> bool:
    if not documents:
        existing = await session.execute(select(ProjectDocument.id).where(ProjectDocument.id == project_id))
        return existing.scalar_one_or_none() is not None

    result = await session.execute(
        update(ProjectDocument)
        .where(ProjectDocument.id == project_id)
        .values(**documents, updated_at=sa_text("CURRENT_TIMESTAMP"))
    )
    return result.rowcount == 1


async def delete_project(session: AsyncSession, project_id: str) -> bool:
    result = await session.execute(delete(ProjectDocument).where(ProjectDocument.id == project_id))
    return result.rowcount == 1
