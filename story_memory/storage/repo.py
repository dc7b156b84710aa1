from __future__ import annotations

from typing import Any

import orjson
from sqlalchemy.ext.asyncio import AsyncSession

from story_memory.domain.models import Project
from story_memory.errors import InvalidProjectFieldError, ProjectNotFoundError
from story_memory.storage.db import session_scope
from story_memory.storage.projects import crud as projects_crud
from story_memory.storage.projects.base import DOCUMENT_COLUMNS
from story_memory.storage.types import InsertResult, ProjectListRow


def _field_payload(project: Project, name: str) -> Any:
    value = getattr(project, name)
    if isinstance(value, list):
        return [item.to_payload() for item in value]
    return value


def _decode_project(row) -> Project:
    data: dict[str, Any] = {"id": row.id, "name": row.name}
    for name, column in DOCUMENT_COLUMNS.items():
        data[name] = orjson.loads(getattr(row, column))
    return Project.model_validate(data)


class SQLAlchemyRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_project(self, project: Project) -> InsertResult:
        documents = projects_crud.encode_documents({name: _field_payload(project, name) for name in DOCUMENT_COLUMNS})
        return await projects_crud.upsert_project(
            self.session,
            project_id=project.id,
            name=project.name,
            documents=documents,
        )

    async def get_project(self, project_id: str) -> Project:
        row = await projects_crud.get_project(self.session, project_id)
        if row is None:
            raise ProjectNotFoundError(project_id)
        return _decode_project(row)

    async def list_projects(self) -> list[ProjectListRow]:
        return await projects_crud.list_projects(self.session)

    async def update_project_fields(self, project_id: str, fields: dict[str, Any]) -> None:
        try:
            documents = projects_crud.encode_documents(fields)
        except KeyError as exc:
            raise InvalidProjectFieldError(str(exc.args[0])) from exc

        updated = await projects_crud.update_documents(self.session, project_id, documents)
        if not updated:
            raise ProjectNotFoundError(project_id)

    async def delete_project(self, project_id: str) -> bool:
        return await projects_crud.delete_project(self.session, project_id)


async def persist_project_fields(project_id: str, fields: dict[str, list[dict[str, Any]]]) -> None:
    """``ProjectStore`` persister writing replacement arrays in their own transaction."""
    async with session_scope() as session:
        await SQLAlchemyRepo(session).update_project_fields(project_id, fields)
