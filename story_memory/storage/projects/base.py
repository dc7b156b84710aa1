from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text, text as sa_text
from sqlalchemy.orm import Mapped, mapped_column

from story_memory.storage.base import Base

# Project field name -> JSON document column.
DOCUMENT_COLUMNS: dict[str, str] = {
    "specification": "specification_json",
    "characters": "characters_json",
    "chapters": "chapters_json",
    "fact_assertions": "fact_assertions_json",
    "worldbuilding_entries": "worldbuilding_entries_json",
    "subplots": "subplots_json",
    "chapter_summaries": "chapter_summaries_json",
    "character_knowledge_states": "character_knowledge_states_json",
}


class ProjectDocument(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    specification_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    characters_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    chapters_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    fact_assertions_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    worldbuilding_entries_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    subplots_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    chapter_summaries_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    character_knowledge_states_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=sa_text("CURRENT_TIMESTAMP"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa_text("CURRENT_TIMESTAMP"),
        onupdate=sa_text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
