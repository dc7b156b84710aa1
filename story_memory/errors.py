from __future__ import annotations


class StoryMemoryError(Exception):
    """Base error for the story memory subsystem."""


class GenerationFailure(StoryMemoryError):
    """The generation collaborator errored, timed out, or returned nothing."""

    kind = "generation"


class GenerationCancelled(GenerationFailure):
    kind = "cancelled"


class CollaboratorBusy(GenerationFailure):
    """Raised when a collaborator call is attempted while another is in flight."""

    kind = "busy"

    def __init__(self, action: str, in_flight_action: str | None = None):
        self.action = action
        self.in_flight_action = in_flight_action
        detail = f" (in flight: {in_flight_action})" if in_flight_action else ""
        super().__init__(f"Generation collaborator busy, refused '{action}'{detail}")


class ParseFailure(StoryMemoryError):
    """The collaborator answered with text that is not a JSON object of the expected shape."""

    kind = "parse"


class ProjectNotFoundError(StoryMemoryError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class InvalidProjectFieldError(StoryMemoryError):
    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Field is not writable through update_project: {field}")


class PersistenceFailure(StoryMemoryError):
    """The project persister failed; local arrays were restored."""

    kind = "persist"
