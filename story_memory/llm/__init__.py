"""Generation collaborator contract, prompts and the chat-model client."""

from story_memory.llm.collaborator import GenerationCollaborator, GenerationRequest, STORY_MEMORY_TARGET

__all__ = ["GenerationCollaborator", "GenerationRequest", "STORY_MEMORY_TARGET"]
