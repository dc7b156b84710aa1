from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class InsertResult:
    id: str
    inserted: bool


@dataclass
class ProjectRow:
    id: str
    name: str
    specification_json: str
    characters_json: str
    chapters_json: str
    fact_assertions_json: str
    worldbuilding_entries_json: str
    subplots_json: str
    chapter_summaries_json: str
    character_knowledge_states_json: str
    updated_at: datetime


@dataclass
class ProjectListRow:
    id: str
    name: str
    chapters: int
    chapter_summaries: int
    character_knowledge_states: int
    updated_at: datetime
