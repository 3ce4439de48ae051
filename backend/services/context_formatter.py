"""Render a GraphContext as Markdown prompt sections.

Sections come out in a fixed order, world and book settings first and
scene-specific detail last, so the stable prefix of a prompt stays stable
across scenes of the same book.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from core.llm_client import SystemBlock
from core.story_schema import (
    CONTENT_RATING_LABELS,
    PACING_LABELS,
    POV_LABELS,
    PROSE_STYLE_LABELS,
    ROMANCE_LABELS,
    VIOLENCE_LABELS,
    label_for,
)
from models import BookContext, ContextRelationship, GraphContext, NodeType

SCENE_WRITER_PROMPT = (
    "You are a professional fiction writer helping to write a novel. "
    "Your task is to expand the beat instructions into engaging, polished prose.\n\n"
    "## Universal Writing Standards\n"
    "- Show, don't tell - use sensory details and actions\n"
    "- Create smooth transitions if following previous content\n"
    "- Write approximately 500-1000 words per scene unless specified otherwise\n"
    "- Do not include meta-commentary or notes, only the prose itself\n"
    "- Maintain timeline consistency with established events"
)

POV_INSTRUCTIONS: Dict[str, str] = {
    "first_person": (
        "Write in first person perspective (I/me). "
        "The narrator is the POV character experiencing events directly."
    ),
    "third_limited": (
        "Write in third person limited perspective. "
        "Stay in the POV character's head - only show what they perceive, think, and feel."
    ),
    "third_omniscient": (
        "Write in third person omniscient perspective. You may reveal any character's thoughts "
        "and provide narrative insight beyond any single character's knowledge."
    ),
    "second_person": "Write in second person perspective (you). Address the reader as the protagonist.",
    "multiple_pov": (
        "Write in third person with the designated POV character's perspective. "
        "Stay in their head for this scene."
    ),
}

PROSE_STYLE_INSTRUCTIONS: Dict[str, str] = {
    "literary": "Use rich, layered prose with careful attention to language, metaphor, and subtext.",
    "commercial": "Use accessible, engaging prose that prioritizes clarity and forward momentum.",
    "sparse": "Use sparse, minimalist prose. Short sentences. Let actions speak. Trust the reader.",
    "ornate": "Use detailed, descriptive prose with elaborate imagery and flowing sentences.",
    "conversational": "Use informal, natural prose that feels like someone telling a story to a friend.",
}

PACING_INSTRUCTIONS: Dict[str, str] = {
    "fast": "Maintain a fast pace with quick cuts, short paragraphs, and urgent momentum.",
    "moderate": "Balance action with reflection. Vary paragraph length for rhythm.",
    "slow": "Take time to breathe. Linger on moments, internal thoughts, and sensory details.",
    "variable": "Match pacing to the scene's emotional beats - speed up for tension, slow down for intimacy.",
}

CONTENT_RATING_INSTRUCTIONS: Dict[str, str] = {
    "all_ages": "Keep content appropriate for all ages. No explicit violence, romance, or mature themes.",
    "teen": "Content suitable for teens. Violence can be implied but not graphic. Romance stays PG-13.",
    "mature": "Mature content allowed. Violence and romantic tension can be more explicit but not gratuitous.",
    "adult": "Adult content permitted. Handle mature themes with craft and purpose.",
}

STANDARD_GUIDELINES = (
    "Match the tone and style appropriate for the genre",
    "Maintain consistency with established characters and world",
    "Reference character relationships and world details naturally",
)


def _capitalize(value: str) -> str:
    return value[:1].upper() + value[1:]


def _relationship_label(relationship_type: str) -> str:
    return relationship_type.replace("_", " ")


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _format_attribute_value(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    return str(value)


def format_attributes(attributes: Optional[Dict[str, Any]]) -> Optional[str]:
    if not attributes:
        return None
    parts = [
        f"{key}: {_format_attribute_value(value)}"
        for key, value in attributes.items()
        if value is not None and value != ""
    ]
    return ", ".join(parts) or None


def _current_book(context: GraphContext) -> Optional[BookContext]:
    return next((book for book in context.book_context if book.is_current), None)


def format_project_section(context: GraphContext) -> str:
    project = context.project
    lines = ["## Story World", f"Project: {project.title}"]
    if project.genre:
        lines.append(f"Genre: {project.genre}")
    if project.world_setting:
        lines.append(f"Setting: {project.world_setting}")
    if project.time_period:
        lines.append(f"Time Period: {project.time_period}")
    if project.world_description:
        lines.append(f"World Description: {project.world_description}")
    if project.themes:
        lines.append(f"Themes: {', '.join(project.themes)}")
    if project.target_audience:
        lines.append(f"Target Audience: {project.target_audience}")
    if project.narrative_conventions:
        lines.append(f"Narrative Conventions: {', '.join(project.narrative_conventions)}")
    return "\n".join(lines)


def format_book_section(context: GraphContext) -> Optional[str]:
    book = _current_book(context)
    if book is None:
        return None

    header = f"## Current Book: {book.title}"
    if len(context.book_context) > 1:
        header += f" (Book {book.sort_order + 1} of {len(context.book_context)})"
    lines = [header]
    if book.synopsis:
        lines.append(f"Synopsis: {book.synopsis}")

    earlier = [item for item in context.book_context if item.sort_order < book.sort_order and item.synopsis]
    if earlier:
        lines.append("")
        lines.append("Previous Books:")
        for item in earlier:
            lines.append(f"- {item.title}: {_truncate(item.synopsis or '', 150)}")
    return "\n".join(lines)


def format_writing_style_section(context: GraphContext) -> Optional[str]:
    book = _current_book(context)
    if book is None:
        return None

    lines: List[str] = []
    if book.pov_style or book.tense:
        lines.append("## Writing Style")
        if book.pov_style:
            lines.append(f"- Point of View: {label_for(POV_LABELS, book.pov_style)}")
        if book.tense:
            lines.append(f"- Tense: {'Past Tense' if book.tense == 'past' else 'Present Tense'}")
        if book.prose_style:
            lines.append(f"- Prose Style: {label_for(PROSE_STYLE_LABELS, book.prose_style)}")
        if book.pacing:
            lines.append(f"- Pacing: {label_for(PACING_LABELS, book.pacing)}")
        if book.dialogue_style:
            lines.append(f"- Dialogue Style: {book.dialogue_style}")

    if book.tone:
        if not lines:
            lines.append("## Writing Style")
        lines.append(f"- Tone: {', '.join(book.tone)}")

    if book.content_rating or book.violence_level or book.romance_level:
        lines.append("")
        lines.append("### Content Guidelines")
        if book.content_rating:
            lines.append(f"- Content Rating: {label_for(CONTENT_RATING_LABELS, book.content_rating)}")
        if book.violence_level:
            lines.append(f"- Violence: {label_for(VIOLENCE_LABELS, book.violence_level)}")
        if book.romance_level:
            lines.append(f"- Romance: {label_for(ROMANCE_LABELS, book.romance_level)}")

    return "\n".join(lines) if lines else None


def format_chapter_section(context: GraphContext) -> Optional[str]:
    current = next(
        (item for item in context.chapter_summaries if item.id == context.current_chapter_id),
        None,
    )
    scene = context.scene
    time_in_story = scene.time_in_story if scene else None
    if current is None and not time_in_story:
        return None

    lines = ["## Current Chapter"]
    if current is not None:
        lines.append(f"Title: {current.title or 'Untitled'}")
        if current.summary:
            lines.append(f"Summary: {current.summary}")
    if scene and scene.title:
        lines.append(f"Scene: {scene.title}")
    if time_in_story:
        lines.append(f"Time in Story: {time_in_story}")
    return "\n".join(lines)


def format_characters_section(context: GraphContext) -> Optional[str]:
    characters = [node for node in context.nodes if node.type == NodeType.CHARACTER]
    if not characters:
        return None
    characters.sort(key=lambda node: (not node.is_pov, node.depth))

    lines = ["## Characters in This Scene"]
    for node in characters:
        lines.append("")
        lines.append(f"### {node.name}{' (POV Character)' if node.is_pov else ''}")
        if node.character_role:
            lines.append(f"- Role: {_capitalize(node.character_role)}")
        if node.description:
            lines.append(f"- Description: {node.description}")
        if node.character_arc:
            lines.append(f"- Arc: {node.character_arc}")
        attributes = format_attributes(node.attributes)
        if attributes:
            lines.append(f"- Attributes: {attributes}")
        if node.tags:
            lines.append(f"- Tags: {', '.join(node.tags)}")
    return "\n".join(lines)


def format_relationships_section(context: GraphContext) -> Optional[str]:
    grouped: "OrderedDict[str, List[ContextRelationship]]" = OrderedDict()
    for rel in context.relationships:
        if rel.source_type != NodeType.CHARACTER and rel.target_type != NodeType.CHARACTER:
            continue
        grouped.setdefault(rel.source_name, []).append(rel)
    if not grouped:
        return None

    lines = ["## Character Relationships"]
    for source_name, rels in grouped.items():
        for rel in rels:
            line = f"- {source_name} **{_relationship_label(rel.relationship_type)}** {rel.target_name}"
            if rel.valid_from_book_title:
                line += f" (since {rel.valid_from_book_title})"
            if rel.valid_until_book_title:
                line += f" (until {rel.valid_until_book_title})"
            lines.append(line)
            if rel.description:
                lines.append(f"  {rel.description}")
    return "\n".join(lines)


def format_location_section(context: GraphContext) -> Optional[str]:
    locations = [node for node in context.nodes if node.type == NodeType.LOCATION]
    primary = next((node for node in locations if node.depth == 0), None)
    if primary is None:
        return None

    lines = [f"## Location: {primary.name}"]
    if primary.location_type:
        lines.append(f"- Type: {_capitalize(primary.location_type)}")
    if primary.description:
        lines.append(f"- Description: {primary.description}")
    connected = [node.name for node in locations if node.depth > 0]
    if connected:
        lines.append(f"- Part of: {primary.name} → {' → '.join(connected)}")
    return "\n".join(lines)


def format_faction_section(context: GraphContext) -> Optional[str]:
    factions = [node for node in context.nodes if node.type == NodeType.FACTION]
    if not factions:
        return None

    lines = ["## Faction Dynamics"]
    for faction in factions:
        lines.append(f"- {faction.name}: {faction.description or 'No description'}")
    for rel in context.relationships:
        if rel.source_type == NodeType.FACTION or rel.target_type == NodeType.FACTION:
            lines.append(f"- {rel.source_name} is **{_relationship_label(rel.relationship_type)}** {rel.target_name}")
    return "\n".join(lines)


def format_events_section(context: GraphContext) -> Optional[str]:
    if not context.events:
        return None

    lines = ["## Recent Events"]
    for event in context.events[:5]:
        line = f"- {event.name}"
        if event.event_date:
            line += f" ({event.event_date})"
        lines.append(line)
        if event.description:
            lines.append(f"  {_truncate(event.description, 100)}")
        if event.involved_character_names:
            lines.append(f"  Involved: {', '.join(event.involved_character_names)}")
    return "\n".join(lines)


def format_previous_scenes_section(context: GraphContext) -> Optional[str]:
    if not context.previous_scenes:
        return None

    lines = ["## Previous Scene Context"]
    for scene in context.previous_scenes:
        chapter_note = "" if scene.is_current_chapter else f" ({scene.chapter_title})"
        lines.append(f"### {scene.title or 'Previous Scene'}{chapter_note}")
        lines.append(scene.excerpt)
        lines.append("")
    return "\n".join(lines).strip()


def format_chapter_summaries_section(context: GraphContext) -> Optional[str]:
    index = next(
        (pos for pos, item in enumerate(context.chapter_summaries) if item.id == context.current_chapter_id),
        -1,
    )
    if index <= 0:
        return None

    lines = ["## Previous Chapter Summaries"]
    for chapter in context.chapter_summaries[:index][-3:]:
        if not chapter.summary:
            continue
        lines.append(f"### {chapter.title or 'Untitled'}")
        lines.append(chapter.summary)
        lines.append("")
    return "\n".join(lines).strip() if len(lines) > 1 else None


_SECTIONS = (
    format_book_section,
    format_writing_style_section,
    format_chapter_section,
    format_characters_section,
    format_relationships_section,
    format_location_section,
    format_faction_section,
    format_events_section,
    format_previous_scenes_section,
    format_chapter_summaries_section,
)


def format_context_for_prompt(context: GraphContext) -> str:
    sections = [format_project_section(context)]
    for formatter in _SECTIONS:
        section = formatter(context)
        if section:
            sections.append(section)
    return "\n\n".join(sections)


def build_book_guidelines(context: Optional[GraphContext], guidelines: Optional[List[str]] = None) -> List[str]:
    book = _current_book(context) if context is not None else None
    items: List[str] = []

    if book is not None and book.pov_style:
        items.append(POV_INSTRUCTIONS.get(book.pov_style, "Write in third person limited perspective."))
    else:
        items.append("Write in third person limited perspective unless specified otherwise.")

    if book is not None:
        if book.tense:
            items.append(
                "Use present tense throughout (walks, sees, feels)."
                if book.tense == "present"
                else "Use past tense throughout (walked, saw, felt)."
            )
        if book.prose_style in PROSE_STYLE_INSTRUCTIONS:
            items.append(PROSE_STYLE_INSTRUCTIONS[book.prose_style])
        if book.pacing in PACING_INSTRUCTIONS:
            items.append(PACING_INSTRUCTIONS[book.pacing])
        if book.content_rating in CONTENT_RATING_INSTRUCTIONS:
            items.append(CONTENT_RATING_INSTRUCTIONS[book.content_rating])

    items.extend(STANDARD_GUIDELINES)
    items.extend(guidelines or [])
    return items


def build_cacheable_system_prompt(
    context_str: str,
    guidelines: Optional[List[str]] = None,
    context: Optional[GraphContext] = None,
) -> Tuple[str, str, str]:
    """Split the scene-writer system prompt into (static, per-book, per-scene) parts."""
    book_lines = build_book_guidelines(context, guidelines)
    book_part = "## Book Style Guidelines\n" + "\n".join(f"- {line}" for line in book_lines)
    return SCENE_WRITER_PROMPT, book_part, context_str


def build_scene_system_blocks(static_part: str, book_part: str, context_part: str) -> List[SystemBlock]:
    """Static and per-book text share one cacheable block; scene context stays uncached."""
    return [
        SystemBlock(text=f"{static_part}\n\n{book_part}", cacheable=True),
        SystemBlock(text=f"## Scene Context\n{context_part}"),
    ]
