"""Typed shapes for the project aggregate and the story memory collections.

Field names serialize as camelCase so project documents and collaborator
payloads keep the wire format the writing app uses. Missing or ``null``
fields fall back to empty collections here, once, at parse time.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


INACTIVE_SUBPLOT_STATUSES = frozenset({"resolved", "abandoned"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def count_words(text: str) -> int:
    return len(text.split())


def _coerce_str_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (str, int, float)):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        return []
    values: list[str] = []
    for item in raw:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            values.append(text)
    return values


def _coerce_model_list(raw: Any) -> list[Any]:
    if raw is None:
        return []
    if isinstance(raw, (str, dict)):
        return [raw]
    if not isinstance(raw, (list, tuple)):
        return []
    return [item for item in raw if item is not None]


class MemoryModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # null means "not provided"; let field defaults apply.
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class _TextItem(MemoryModel):
    """Nested item that also accepts a bare string for its primary field."""

    primary_field: ClassVar[str] = ""

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {cls.primary_field: data}
        return data


class KeyEvent(_TextItem):
    primary_field: ClassVar[str] = "event"

    event: str = ""
    participants: list[str] = Field(default_factory=list)
    significance: str | None = None
    caused_by: str | None = None
    leads_to: str | None = Field(default=None, validation_alias=AliasChoices("leads_to", "leadsTo"))

    @field_validator("participants", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)

    def __str__(self) -> str:
        return self.event


class LocationUse(_TextItem):
    primary_field: ClassVar[str] = "name"

    name: str = ""
    new_details: list[str] = Field(default_factory=list)

    @field_validator("new_details", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)


class EmotionalBeat(_TextItem):
    primary_field: ClassVar[str] = "emotion"

    character: str = ""
    emotion: str = ""
    trigger: str | None = None
    resolution: str | None = None


class SubplotTouch(_TextItem):
    primary_field: ClassVar[str] = "subplot_name"

    subplot_name: str = ""
    advancement: str = ""
    new_tension: int | None = None

    @field_validator("new_tension", mode="before")
    @classmethod
    def _tension(cls, value: Any) -> int | None:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None


class Foreshadowing(_TextItem):
    primary_field: ClassVar[str] = "element"

    element: str = ""
    quote: str | None = None
    expected_payoff: str | None = None

    def __str__(self) -> str:
        return self.element


class Payoff(_TextItem):
    primary_field: ClassVar[str] = "setup"

    setup: str = ""
    resolution: str = ""
    satisfaction: str | None = None


class ChapterSummary(MemoryModel):
    id: str
    chapter_id: str
    chapter_number: int
    summary: str = ""
    key_events: list[KeyEvent] = Field(default_factory=list)
    characters_present: list[str] = Field(default_factory=list)
    locations_used: list[LocationUse] = Field(default_factory=list)
    emotional_beats: list[EmotionalBeat] = Field(default_factory=list)
    plot_beats_advanced: list[str] = Field(default_factory=list)
    subplots_touched: list[SubplotTouch] = Field(default_factory=list)
    foreshadowing: list[Foreshadowing] = Field(default_factory=list)
    payoffs: list[Payoff] = Field(default_factory=list)
    cliffhanger: str | None = None
    open_questions: list[str] = Field(default_factory=list)
    token_count: int = 0
    source_word_count: int | None = None
    generated_at: datetime = Field(default_factory=utc_now)

    @field_validator("characters_present", "plot_beats_advanced", "open_questions", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)

    @field_validator(
        "key_events",
        "locations_used",
        "emotional_beats",
        "subplots_touched",
        "foreshadowing",
        "payoffs",
        mode="before",
    )
    @classmethod
    def _model_list(cls, value: Any) -> list[Any]:
        return _coerce_model_list(value)

    @field_validator("summary", "cliffhanger", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("token_count", mode="before")
    @classmethod
    def _token_count(cls, value: Any) -> int:
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            return 0

    @property
    def recorded_word_count(self) -> int:
        """Measure the staleness gate compares against."""
        if self.source_word_count is not None:
            return self.source_word_count
        return self.token_count


class ValueChange(MemoryModel):
    old: str = ""
    new: str = ""
    reason: str = ""


class RelationshipChange(MemoryModel):
    character: str = ""
    change: str = ""


class KnowledgeChanges(MemoryModel):
    facts_learned: list[str] = Field(default_factory=list)
    beliefs_changed: list[ValueChange] = Field(default_factory=list)
    relationships_changed: list[RelationshipChange] = Field(default_factory=list)
    goals_changed: list[ValueChange] = Field(default_factory=list)

    @field_validator("facts_learned", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)

    @field_validator("beliefs_changed", "relationships_changed", "goals_changed", mode="before")
    @classmethod
    def _dict_list(cls, value: Any) -> list[Any]:
        return [item for item in _coerce_model_list(value) if isinstance(item, dict)]


class CharacterKnowledgeState(MemoryModel):
    id: str
    character_id: str
    as_of_chapter_id: str
    as_of_chapter_number: int
    known_facts: list[str] = Field(default_factory=list)
    beliefs: list[str] = Field(default_factory=list)
    secrets: list[str] = Field(default_factory=list)
    relationships: dict[str, str] = Field(default_factory=dict)
    emotional_state: str = ""
    active_goals: list[str] = Field(default_factory=list)
    recent_experiences: list[str] = Field(default_factory=list)
    changes_from_previous: KnowledgeChanges | None = None
    generated_at: datetime = Field(default_factory=utc_now)

    @field_validator("known_facts", "beliefs", "secrets", "active_goals", "recent_experiences", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)

    @field_validator("relationships", mode="before")
    @classmethod
    def _relationships(cls, value: Any) -> dict[str, str]:
        if not isinstance(value, dict):
            return {}
        return {str(key): str(item).strip() for key, item in value.items() if item is not None}

    @field_validator("emotional_state", mode="before")
    @classmethod
    def _emotional_state(cls, value: Any) -> str:
        return str(value).strip()


class FactAssertion(MemoryModel):
    id: str
    subject_id: str = ""
    assertion: str = ""
    source_chapter_id: str | None = None
    confidence: float | None = None


class Subplot(MemoryModel):
    id: str
    name: str = ""
    description: str = ""
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return self.status.strip().lower() not in INACTIVE_SUBPLOT_STATUSES


class WikiEntry(MemoryModel):
    id: str
    category: str = ""
    name: str = ""
    description: str = ""
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)


class Character(MemoryModel):
    id: str
    name: str
    aliases: list[str] = Field(default_factory=list)
    role: str | None = None

    @field_validator("aliases", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)

    def answers_to(self, name: str) -> bool:
        needle = name.strip().lower()
        if not needle:
            return False
        if self.name.strip().lower() == needle:
            return True
        return any(alias.lower() == needle for alias in self.aliases)


class Chapter(MemoryModel):
    id: str
    number: int
    title: str = ""
    content: str = ""
    word_count: int = 0

    @property
    def effective_word_count(self) -> int:
        if self.word_count > 0:
            return self.word_count
        return count_words(self.content)


class Project(MemoryModel):
    id: str
    name: str = ""
    specification: dict[str, Any] = Field(default_factory=dict)
    characters: list[Character] = Field(default_factory=list)
    chapters: list[Chapter] = Field(default_factory=list)
    fact_assertions: list[FactAssertion] = Field(default_factory=list)
    worldbuilding_entries: list[WikiEntry] = Field(default_factory=list)
    subplots: list[Subplot] = Field(default_factory=list)
    chapter_summaries: list[ChapterSummary] = Field(default_factory=list)
    character_knowledge_states: list[CharacterKnowledgeState] = Field(default_factory=list)

    def find_chapter(self, chapter_id: str) -> Chapter | None:
        return next((chapter for chapter in self.chapters if chapter.id == chapter_id), None)

    def find_character(self, character_id: str) -> Character | None:
        return next((character for character in self.characters if character.id == character_id), None)

    def summary_for_chapter(self, chapter_id: str) -> ChapterSummary | None:
        return next((summary for summary in self.chapter_summaries if summary.chapter_id == chapter_id), None)

    def active_subplots(self) -> list[Subplot]:
        return [subplot for subplot in self.subplots if subplot.is_active]


class PovConstraints(MemoryModel):
    cannot_know: list[str] = Field(default_factory=list)
    must_remember: list[str] = Field(default_factory=list)
    emotional_state: str = ""

    @field_validator("cannot_know", "must_remember", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)


class ContextRequest(MemoryModel):
    current_chapter_number: int
    current_scene: str | None = None
    pov_character_id: str | None = None
    task_description: str | None = None
    focus: str | None = None


class ContextSelection(MemoryModel):
    """What the collaborator may answer for retrieve-context: identifiers plus free-form notes."""

    relevant_summary_ids: list[str] = Field(default_factory=list)
    relevant_character_state_ids: list[str] = Field(default_factory=list)
    relevant_fact_ids: list[str] = Field(default_factory=list)
    relevant_worldbuilding_ids: list[str] = Field(default_factory=list)
    active_subplot_ids: list[str] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)
    recent_emotional_beats: list[str] = Field(default_factory=list)
    unresolved_setups: list[str] = Field(default_factory=list)
    pov_character_constraints: PovConstraints | None = None
    reasoning: str | None = None

    @field_validator(
        "relevant_summary_ids",
        "relevant_character_state_ids",
        "relevant_fact_ids",
        "relevant_worldbuilding_ids",
        "active_subplot_ids",
        "open_questions",
        "recent_emotional_beats",
        "unresolved_setups",
        mode="before",
    )
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)

    @field_validator("pov_character_constraints", mode="before")
    @classmethod
    def _constraints(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, value: Any) -> str | None:
        return str(value) if value is not None else None


class StoryMemoryContext(MemoryModel):
    relevant_summaries: list[ChapterSummary] = Field(default_factory=list)
    relevant_character_states: list[CharacterKnowledgeState] = Field(default_factory=list)
    relevant_facts: list[FactAssertion] = Field(default_factory=list)
    relevant_worldbuilding: list[WikiEntry] = Field(default_factory=list)
    active_subplots: list[Subplot] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)
    recent_emotional_beats: list[str] = Field(default_factory=list)
    unresolved_setups: list[str] = Field(default_factory=list)
    pov_character_constraints: PovConstraints | None = None

    def is_empty(self) -> bool:
        return not any(
            (
                self.relevant_summaries,
                self.relevant_character_states,
                self.relevant_facts,
                self.relevant_worldbuilding,
                self.active_subplots,
                self.open_questions,
                self.recent_emotional_beats,
                self.unresolved_setups,
            )
        )
