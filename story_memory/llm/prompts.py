from __future__ import annotations

from typing import Any, Callable, Mapping, Sequence

import orjson

from story_memory.domain.models import Character, StoryMemoryContext
from story_memory.llm.collaborator import (
    ACTION_RETRIEVE_CONTEXT,
    ACTION_SUMMARIZE_CHAPTER,
    ACTION_UPDATE_CHARACTER_KNOWLEDGE,
    STORY_MEMORY_TARGET,
)

SUMMARIZE_PROMPT_VERSION = "v1"
KNOWLEDGE_PROMPT_VERSION = "v1"
RETRIEVE_PROMPT_VERSION = "v1"

SYSTEM_PROMPTS: dict[str, str] = {
    STORY_MEMORY_TARGET: (
        "You are a story continuity expert who maintains perfect recall of narrative details. "
        "You summarize chapters with focus on plot-relevant information, character knowledge states, "
        "and setup/payoff tracking. Your summaries are optimized for retrieval during AI generation. "
        "You track what each character knows at any given point in the story. "
        "Answer with strictly valid JSON only, no markdown and no commentary."
    ),
}


def _join(values: Sequence[Any] | None, default: str) -> str:
    items = [str(value) for value in (values or []) if str(value).strip()]
    return ", ".join(items) if items else default


def _render_specification(specification: Mapping[str, Any]) -> str:
    return (
        "## Novel Specification\n"
        f"- Title: {specification.get('workingTitle') or 'Untitled'}\n"
        f"- Genre: {_join(specification.get('genre'), 'Not specified')}\n"
        f"- Target Audience: {specification.get('targetAudience') or 'Adult'}\n"
        f"- POV: {specification.get('pov') or 'Third Limited'}\n"
        f"- Tense: {specification.get('tense') or 'Past'}\n"
        f"- Tone: {specification.get('tone') or 'Not specified'}\n"
        f"- Themes: {_join(specification.get('themes'), 'Not specified')}"
    )


def _render_characters(characters: Sequence[Mapping[str, Any]]) -> str:
    lines = ["## Characters"]
    for char in characters:
        aliases = _join(char.get("aliases"), "none")
        lines.append(f"- {char.get('name') or 'Unnamed'} [{char.get('id')}] ({char.get('role') or 'supporting'}; aliases: {aliases})")
    return "\n".join(lines)


def build_project_context(context: Mapping[str, Any]) -> str:
    parts: list[str] = []
    specification = context.get("specification")
    if isinstance(specification, Mapping) and specification:
        parts.append(_render_specification(specification))
    characters = context.get("characters")
    if characters:
        parts.append(_render_characters(characters))
    return "\n\n".join(parts)


def _dump(data: Any) -> str:
    return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode("utf-8")


def summarize_chapter_prompt(ctx: Mapping[str, Any]) -> str:
    return (
        "Create a structured summary of this chapter optimized for story memory and retrieval.\n\n"
        f"{build_project_context(ctx)}\n\n"
        "## Chapter to Summarize\n"
        f"Chapter Number: {ctx.get('chapterNumber') or 1}\n"
        f"Chapter Title: {ctx.get('chapterTitle') or 'Untitled'}\n\n"
        "Content:\n---\n"
        f"{ctx.get('chapterContent') or ''}\n"
        "---\n\n"
        "Focus on information that will be critical for maintaining continuity: key plot events and their "
        "consequences, character appearances, emotional beats, locations, foreshadowing that needs payoff, "
        "payoffs of earlier setups, cliffhangers.\n\n"
        "Return JSON with these fields:\n"
        "- summary: 2-3 paragraph narrative summary of plot-critical information\n"
        "- keyEvents: [{event, participants[], significance: high|medium|low, causedBy, leadsTo}]\n"
        "- charactersPresent: names of every character who appears\n"
        "- locationsUsed: [{name, newDetails[]}]\n"
        "- emotionalBeats: [{character, emotion, trigger, resolution}]\n"
        "- plotBeatsAdvanced: outline beats that were touched\n"
        "- subplotsTouched: [{subplotName, advancement, newTension: 1-10}]\n"
        "- foreshadowing: [{element, quote, expectedPayoff}]\n"
        "- payoffs: [{setup, resolution, satisfaction: high|medium|low}]\n"
        "- cliffhanger: chapter-ending tension or null\n"
        "- openQuestions: questions readers should have after this chapter\n"
        "- tokenCount: estimated tokens of this summary\n"
    )


def update_character_knowledge_prompt(ctx: Mapping[str, Any]) -> str:
    previous = ctx.get("previousKnowledgeState") or {}
    return (
        "Update the knowledge state for this character based on events in this chapter.\n\n"
        f"{build_project_context(ctx)}\n\n"
        "## Character\n"
        f"Name: {ctx.get('characterName')}\n"
        f"Character ID: {ctx.get('characterId')}\n"
        f"Role: {ctx.get('characterRole') or 'Unknown'}\n\n"
        f"## Previous Knowledge State (as of Chapter {ctx.get('previousChapter') or 0})\n"
        f"{_dump(previous)}\n\n"
        f"## Events in Current Chapter ({ctx.get('currentChapter')})\n"
        f"{ctx.get('chapterSummary') or ''}\n\n"
        "## Character's Direct Experiences in This Chapter\n"
        f"{ctx.get('characterExperiences') or 'See chapter summary'}\n\n"
        "## New Information Revealed to This Character\n"
        f"{ctx.get('newInformation') or 'Determine from chapter content'}\n\n"
        "Return JSON with these fields:\n"
        "- knownFacts: facts they definitely know (mark [NEW] if learned this chapter)\n"
        "- beliefs: things they believe but might be wrong about\n"
        "- secrets: things they know and hide from others\n"
        "- relationships: object of other character id -> current relationship description\n"
        "- emotionalState: their emotional state at chapter end\n"
        "- activeGoals: what they are currently trying to achieve\n"
        "- recentExperiences: significant events from this chapter that affect them\n"
        "- changesFromPrevious: {factsLearned[], beliefsChanged[{old,new,reason}], "
        "relationshipsChanged[{character,change}], goalsChanged[{old,new,reason}]}\n"
    )


def _inventory_block(title: str, lines: list[str]) -> str:
    body = "\n".join(lines) if lines else "None"
    return f"### {title} ({len(lines)})\n{body}"


def retrieve_context_prompt(ctx: Mapping[str, Any]) -> str:
    summary_chars = int(ctx.get("inventorySummaryChars") or 100)
    summaries = [
        f"- [{item.get('chapterId')}] Chapter {item.get('chapterNumber')}: {str(item.get('summary') or '')[:summary_chars]}..."
        for item in ctx.get("availableSummaries") or []
    ]
    states = [
        f"- [{item.get('characterId')}] {item.get('characterName')}: as of Chapter {item.get('asOfChapterNumber')}"
        for item in ctx.get("availableCharacterStates") or []
    ]
    max_facts = int(ctx.get("inventoryMaxFacts", 10))
    max_wiki = int(ctx.get("inventoryMaxWorldbuilding", 10))
    facts = [
        f"- [{item.get('id')}] {item.get('subjectId')}: {item.get('assertion')}"
        for item in (ctx.get("availableFacts") or [])[:max_facts]
    ]
    subplots = [f"- [{item.get('id')}] {item.get('name')} ({item.get('status')})" for item in ctx.get("activeSubplots") or []]
    wiki = [
        f"- [{item.get('id')}] {item.get('name')} ({item.get('category')})"
        for item in (ctx.get("worldbuildingEntries") or [])[:max_wiki]
    ]

    return (
        "Determine what story context is most relevant for this generation request.\n\n"
        f"{build_project_context(ctx)}\n\n"
        "## Current Writing Position\n"
        f"Chapter: {ctx.get('currentChapter') or 1}\n"
        f"Scene: {ctx.get('currentScene') or 'Unknown'}\n"
        f"POV Character: {ctx.get('povCharacter') or 'Unknown'}\n\n"
        "## Generation Request\n"
        f"Task: {ctx.get('taskDescription') or 'Continue writing'}\n"
        f"Focus: {ctx.get('focus') or 'General narrative'}\n\n"
        "## Available Context Sources (ids in brackets)\n"
        f"{_inventory_block('Chapter Summaries', summaries)}\n\n"
        f"{_inventory_block('Character Knowledge States', states)}\n\n"
        f"{_inventory_block('Facts', facts)}\n\n"
        f"{_inventory_block('Active Subplots', subplots)}\n\n"
        f"{_inventory_block('Worldbuilding Entries', wiki)}\n\n"
        "Prioritize what the POV character knows, recent events affecting the scene, active subplot threads, "
        "relationships of characters in the scene, and location details.\n"
        "Select by id only. Return JSON with these fields:\n"
        "- relevantSummaryIds: chapter ids to include, most relevant first\n"
        "- relevantCharacterStateIds: character ids whose states matter\n"
        "- relevantFactIds, relevantWorldbuildingIds, activeSubplotIds\n"
        "- openQuestions, recentEmotionalBeats, unresolvedSetups: short strings\n"
        "- povCharacterConstraints: {cannotKnow[], mustRemember[], emotionalState}\n"
        "- reasoning: one sentence\n"
    )


ACTION_PROMPTS: dict[str, Callable[[Mapping[str, Any]], str]] = {
    ACTION_SUMMARIZE_CHAPTER: summarize_chapter_prompt,
    ACTION_UPDATE_CHARACTER_KNOWLEDGE: update_character_knowledge_prompt,
    ACTION_RETRIEVE_CONTEXT: retrieve_context_prompt,
}

PROMPT_VERSIONS: dict[str, str] = {
    ACTION_SUMMARIZE_CHAPTER: SUMMARIZE_PROMPT_VERSION,
    ACTION_UPDATE_CHARACTER_KNOWLEDGE: KNOWLEDGE_PROMPT_VERSION,
    ACTION_RETRIEVE_CONTEXT: RETRIEVE_PROMPT_VERSION,
}


def render_prompts(target: str, action: str, context: Mapping[str, Any]) -> tuple[str, str]:
    if target not in SYSTEM_PROMPTS:
        raise ValueError(f"Unknown generation target: {target}")
    builder = ACTION_PROMPTS.get(action)
    if builder is None:
        raise ValueError(f"Unknown generation action: {action}")
    return SYSTEM_PROMPTS[target], builder(context)


def format_memory_context(context: StoryMemoryContext, characters: Sequence[Character] = ()) -> str:
    """Render a selected context as the story-memory section of a generation prompt."""

    names = {character.id: character.name for character in characters}
    parts: list[str] = []

    if context.relevant_summaries:
        parts.append("## Story Memory - Previous Chapter Summaries")
        for summary in context.relevant_summaries:
            marker = " (ends with cliffhanger)" if summary.cliffhanger else ""
            events = "; ".join(event.event for event in summary.key_events if event.event) or "None"
            present = ", ".join(summary.characters_present) or "None"
            parts.append(
                f"### Chapter {summary.chapter_number}{marker}\n{summary.summary}\n"
                f"- Key events: {events}\n- Characters present: {present}"
            )

    if context.relevant_character_states:
        parts.append("## Character Knowledge States (what characters know/believe)")
        for state in context.relevant_character_states:
            name = names.get(state.character_id, "Unknown")
            parts.append(
                f"### {name} (as of Chapter {state.as_of_chapter_number})\n"
                f"- Knows: {'; '.join(state.known_facts[:5]) or 'Nothing tracked'}\n"
                f"- Believes: {'; '.join(state.beliefs[:3]) or 'No beliefs tracked'}\n"
                f"- Current goals: {'; '.join(state.active_goals) or 'None'}\n"
                f"- Emotional state: {state.emotional_state or 'Unknown'}"
            )

    if context.relevant_facts:
        parts.append("## Established Facts (maintain these for continuity)")
        by_subject: dict[str, list[str]] = {}
        for fact in context.relevant_facts:
            by_subject.setdefault(fact.subject_id or "general", []).append(fact.assertion)
        for subject, assertions in by_subject.items():
            parts.append(f"- {subject}: {'; '.join(assertions)}")

    if context.relevant_worldbuilding:
        parts.append("## Worldbuilding")
        for entry in context.relevant_worldbuilding:
            parts.append(f"- {entry.name} ({entry.category}): {entry.description or 'No description'}")

    if context.active_subplots:
        parts.append("## Active Subplots (consider weaving these in)")
        for subplot in context.active_subplots:
            parts.append(f"- {subplot.name} ({subplot.status}): {subplot.description or 'No description'}")

    if context.open_questions:
        parts.append("## Reader's Open Questions (maintain these mysteries)")
        parts.extend(f"- {question}" for question in context.open_questions)

    if context.recent_emotional_beats:
        parts.append("## Recent Emotional Beats")
        parts.extend(f"- {beat}" for beat in context.recent_emotional_beats)

    if context.unresolved_setups:
        parts.append("## Foreshadowing/Setups (consider paying off)")
        parts.extend(f"- {setup}" for setup in context.unresolved_setups)

    constraints = context.pov_character_constraints
    if constraints is not None:
        parts.append("## POV Character Constraints")
        if constraints.cannot_know:
            parts.append(f"CANNOT reference (character doesn't know): {'; '.join(constraints.cannot_know)}")
        if constraints.must_remember:
            parts.append(f"Should remember: {'; '.join(constraints.must_remember)}")
        if constraints.emotional_state:
            parts.append(f"Current emotional context: {constraints.emotional_state}")

    return "\n".join(parts)
