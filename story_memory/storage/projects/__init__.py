"""Project document storage model and CRUD helpers."""

from story_memory.storage.projects.base import ProjectDocument
from story_memory.storage.projects import crud

__all__ = ["ProjectDocument", "crud"]
