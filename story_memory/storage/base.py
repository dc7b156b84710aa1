from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def import_all_models() -> None:
    from story_memory.storage.projects.base import ProjectDocument

    _ = (ProjectDocument,)
