from story_memory.project.store import ProjectStore, WRITABLE_FIELDS

__all__ = ["ProjectStore", "WRITABLE_FIELDS"]
