"""Book- and project-level generation: outlines, synopses, series recaps and
whole story universes.

Each ``generate_*`` function is synchronous (the API runs it in a worker
thread), makes exactly one LLM call and returns the parsed result together
with the raw ``LLMResult`` so callers can account for tokens.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.llm_client import LLMResult
from core.story_schema import (
    CHARACTER_ROLES,
    DEFAULT_RELATIONSHIP_TYPE,
    RELATIONSHIP_TYPE_VALUES,
    SCENE_MOODS,
    TENSION_LEVELS,
)
from models import Book, Chapter, NodeType, Project, StoryEdge, StoryNode
from services.provider_resolution import UserProvider
from storage import StoryStore
from utils.text_cleaner import count_words, extract_json_object

logger = logging.getLogger("novelworld.generation")

OUTLINE_MAX_TOKENS = 8000
UNIVERSE_MAX_TOKENS = 8000

LOCATION_TYPES = ["city", "town", "village", "building", "room", "wilderness", "forest", "mountain", "other"]

# Graph layout for generated universes: one block of columns per node type.
LAYOUT_TYPE_ORDER = ["character", "location", "faction", "item", "event", "concept"]
LAYOUT_HORIZONTAL_SPACING = 400
LAYOUT_VERTICAL_SPACING = 200
LAYOUT_TYPE_GAP = 500
LAYOUT_MAX_NODES_PER_COLUMN = 5


class GenerationError(Exception):
    """The model answered but the answer could not be used."""


# ---------------------------------------------------------------------------
# Shared context
# ---------------------------------------------------------------------------


def _format_node_line(node: StoryNode) -> str:
    line = f"- {node.name}"
    if node.description:
        line += f": {node.description}"
    if node.character_role:
        line += f" ({node.character_role})"
    return line


def _format_relationship_lines(nodes: List[StoryNode], edges: List[StoryEdge]) -> List[str]:
    by_id = {node.id: node for node in nodes}
    lines = []
    for edge in edges:
        source = by_id.get(edge.source_node_id)
        target = by_id.get(edge.target_node_id)
        if source is None or target is None:
            continue
        label = (edge.relationship_type or DEFAULT_RELATIONSHIP_TYPE).replace("_", " ")
        suffix = f" ({edge.description})" if edge.description else ""
        lines.append(f"- {source.name} {label} {target.name}{suffix}")
    return lines


def format_universe_context(
    project: Project,
    book: Book,
    nodes: List[StoryNode],
    edges: List[StoryEdge],
) -> str:
    """Project, book style and every story element as one Markdown brief."""
    text = "# Story Universe\n\n"
    text += f"## Project: {project.title}\n"
    if project.genre:
        text += f"Genre: {project.genre}\n"
    if project.description:
        text += f"World Description: {project.description}\n"
    if project.world_setting:
        text += f"World Setting: {project.world_setting}\n"
    if project.time_period:
        text += f"Time Period: {project.time_period}\n"
    if project.world_description:
        text += f"Detailed World: {project.world_description}\n"
    if project.themes:
        text += f"Themes: {', '.join(project.themes)}\n"

    text += f"\n## Book: {book.title}\n"
    if book.subtitle:
        text += f"Subtitle: {book.subtitle}\n"
    if book.synopsis:
        text += f"Synopsis: {book.synopsis}\n"

    style = []
    if book.pov_style:
        style.append(f"POV: {book.pov_style}")
    if book.tense:
        style.append(f"Tense: {book.tense}")
    if book.prose_style:
        style.append(f"Prose Style: {book.prose_style}")
    if book.pacing:
        style.append(f"Pacing: {book.pacing}")
    if book.content_rating:
        style.append(f"Content Rating: {book.content_rating}")
    if book.tone:
        style.append(f"Tone: {', '.join(book.tone)}")
    if book.target_word_count:
        style.append(f"Target Length: ~{book.target_word_count:,} words")
    if style:
        text += "\n### Writing Style\n" + "\n".join(style) + "\n"

    sections = (
        (NodeType.CHARACTER, "Characters"),
        (NodeType.LOCATION, "Locations"),
        (NodeType.FACTION, "Factions/Organizations"),
        (NodeType.EVENT, "Important Events (Backstory)"),
        (NodeType.ITEM, "Notable Items"),
    )
    for node_type, heading in sections:
        typed = [node for node in nodes if node.node_type == node_type]
        if typed:
            text += f"\n## {heading}\n"
            text += "".join(_format_node_line(node) + "\n" for node in typed)

    relationships = _format_relationship_lines(nodes, edges)
    if relationships:
        text += "\n\n## Key Relationships\n" + "\n".join(relationships)
    return text


def format_project_brief(project: Project) -> str:
    text = f"# Project: {project.title}\n\n"
    if project.genre:
        text += f"**Genre:** {project.genre}\n"
    if project.world_setting:
        text += f"**Setting:** {project.world_setting}\n"
    if project.time_period:
        text += f"**Time Period:** {project.time_period}\n"
    if project.target_audience:
        text += f"**Target Audience:** {project.target_audience}\n"
    if project.themes:
        text += f"**Themes:** {', '.join(project.themes)}\n"
    if project.narrative_conventions:
        text += f"**Narrative Conventions:** {', '.join(project.narrative_conventions)}\n"
    if project.description:
        text += f"\n**Description:** {project.description}\n"
    if project.world_description:
        text += f"\n**World Description:** {project.world_description}\n"
    return text


def _ask(provider: UserProvider, model: str, system: str, prompt: str, max_tokens: Optional[int] = None) -> LLMResult:
    return provider.client.chat(
        [{"role": "user", "content": prompt}],
        system=system,
        model=model,
        max_tokens=max_tokens,
    )


def _parse_object(result: LLMResult, what: str) -> Dict[str, Any]:
    payload = extract_json_object(result.text)
    if payload is None:
        logger.warning("%s parse failed model=%s raw=%s", what, result.model, result.text[:500])
        raise GenerationError(f"Failed to parse AI response for {what}")
    return payload


# ---------------------------------------------------------------------------
# Outline
# ---------------------------------------------------------------------------


class OutlineScene(BaseModel):
    title: Optional[str] = None
    beat_instructions: str
    mood: Optional[str] = None
    tension_level: Optional[str] = None

    @field_validator("mood")
    @classmethod
    def _known_mood(cls, value: Optional[str]) -> Optional[str]:
        return value if value in SCENE_MOODS else None

    @field_validator("tension_level")
    @classmethod
    def _known_tension(cls, value: Optional[str]) -> Optional[str]:
        return value if value in TENSION_LEVELS else None


class OutlineChapter(BaseModel):
    title: str
    summary: str = ""
    scenes: List[OutlineScene] = Field(default_factory=list)


class Outline(BaseModel):
    chapters: List[OutlineChapter] = Field(default_factory=list)

    def word_count(self) -> int:
        total = 0
        for chapter in self.chapters:
            total += count_words(chapter.title) + count_words(chapter.summary)
            for scene in chapter.scenes:
                total += count_words(scene.title) + count_words(scene.beat_instructions)
        return total


OUTLINE_FORMAT = json.dumps(
    {
        "chapters": [
            {
                "title": "Chapter title",
                "summary": "Brief chapter summary (1-2 sentences)",
                "scenes": [
                    {
                        "title": "Optional scene title",
                        "beat_instructions": "What happens, key moments, character actions",
                        "mood": "|".join(SCENE_MOODS),
                        "tension_level": "|".join(TENSION_LEVELS),
                    }
                ],
            }
        ]
    },
    indent=2,
)


def build_outline_prompts(
    context: str,
    book_title: str,
    chapter_count: Optional[str] = None,
    scenes_per_chapter: Optional[str] = None,
    additional_instructions: Optional[str] = None,
) -> Tuple[str, str]:
    system = f"""You are an expert fiction writer and story architect. Your task is to create a detailed chapter-by-chapter outline for a novel based on the provided story universe and book details.

{context}

## Guidelines for Outline Generation

1. **Structure**: Create {chapter_count or "10-15"} chapters, each with {scenes_per_chapter or "2-4"} scenes
2. **Pacing**: Follow classic story structure (setup, rising action, midpoint, climax, resolution)
3. **Characters**: Feature the established characters appropriately based on their roles
4. **Locations**: Use the defined locations meaningfully
5. **Consistency**: Respect established relationships and world rules
6. **Beat Instructions**: Each scene's beat_instructions should be detailed enough (2-4 sentences) to guide prose generation, including:
   - What happens in the scene
   - Key character actions or dialogue moments
   - Emotional beats and tension points
   - Setting details if relevant

Create a compelling narrative arc that fits the synopsis and uses the established story elements."""
    if additional_instructions:
        system += f"\n\n## Additional Instructions\n{additional_instructions}"

    prompt = (
        f'Generate a complete chapter outline for "{book_title}". Create a compelling narrative structure '
        "with detailed scene beats that can be expanded into full prose.\n\n"
        f"Respond with valid JSON only, no markdown or explanation, in this format:\n{OUTLINE_FORMAT}"
    )
    return system, prompt


def parse_outline(result: LLMResult) -> Outline:
    payload = _parse_object(result, "outline")
    try:
        return Outline.model_validate(payload)
    except ValidationError as exc:
        raise GenerationError(f"Outline did not match the expected shape: {exc.errors()[0]['msg']}") from exc


def generate_outline(
    provider: UserProvider,
    model: str,
    project: Project,
    book: Book,
    nodes: List[StoryNode],
    edges: List[StoryEdge],
    chapter_count: Optional[str] = None,
    scenes_per_chapter: Optional[str] = None,
    additional_instructions: Optional[str] = None,
) -> Tuple[Outline, LLMResult]:
    context = format_universe_context(project, book, nodes, edges)
    system, prompt = build_outline_prompts(
        context, book.title, chapter_count, scenes_per_chapter, additional_instructions
    )
    logger.info(
        "outline generation start book_id=%s model=%s chapters=%s nodes=%d edges=%d",
        book.id,
        model,
        chapter_count or "10-15",
        len(nodes),
        len(edges),
    )
    result = _ask(provider, model, system, prompt, OUTLINE_MAX_TOKENS)
    return parse_outline(result), result


# ---------------------------------------------------------------------------
# Synopsis
# ---------------------------------------------------------------------------


def build_synopsis_prompts(context: str, book_title: str) -> Tuple[str, str]:
    system = f"""You are an expert fiction writer specializing in crafting compelling book synopses. Your task is to create a synopsis for a novel based on the provided story universe, characters, and book details.

{context}

## Guidelines for Synopsis Generation

1. **Length**: Write a synopsis of 150-300 words that captures the essence of the story
2. **Structure**: Include the main characters, central conflict, and hint at the story arc
3. **Tone**: Match the synopsis tone to the book's genre and style settings
4. **Hook**: Start with a compelling hook that draws readers in
5. **Avoid Spoilers**: Hint at stakes and conflict without revealing the ending
6. **Characters**: Feature the main characters and their goals/conflicts
7. **World**: Incorporate relevant world-building elements naturally

Write the synopsis in a professional, engaging style suitable for a book description. Do not include any preamble, headers, or meta-commentary - just write the synopsis text directly."""
    return system, f'Generate a compelling synopsis for "{book_title}".'


def generate_synopsis(
    provider: UserProvider,
    model: str,
    project: Project,
    book: Book,
    nodes: List[StoryNode],
    edges: List[StoryEdge],
) -> Tuple[str, LLMResult]:
    # An existing synopsis must not steer its own replacement.
    context = format_universe_context(project, book.model_copy(update={"synopsis": None}), nodes, edges)
    system, prompt = build_synopsis_prompts(context, book.title)
    result = _ask(provider, model, system, prompt)
    return result.text.strip(), result


# ---------------------------------------------------------------------------
# Recap
# ---------------------------------------------------------------------------


def format_series_context(
    project: Project,
    previous_books: List[Tuple[Book, List[Chapter]]],
    nodes: List[StoryNode],
) -> str:
    text = "# Series Context\n\n"
    text += f"## Series: {project.title}\n"
    if project.genre:
        text += f"Genre: {project.genre}\n"
    if project.description:
        text += f"Series Description: {project.description}\n"
    text += "\n## Previous Books\n\n"

    for index, (book, chapters) in enumerate(previous_books):
        text += f"### Book {index + 1}: {book.title}\n"
        if book.synopsis:
            text += f"**Synopsis:** {book.synopsis}\n\n"
        summarized = sorted((c for c in chapters if c.summary), key=lambda c: c.order_index)
        if summarized:
            text += "**Chapter Summaries:**\n"
            text += "".join(f"- {chapter.title or 'Untitled'}: {chapter.summary}\n" for chapter in summarized)
            text += "\n"

    characters = [node for node in nodes if node.node_type == NodeType.CHARACTER]
    if characters:
        text += "## Key Characters\n"
        for node in characters:
            line = f"- **{node.name}**"
            if node.character_role:
                line += f" ({node.character_role})"
            if node.description:
                line += f": {node.description}"
            if node.character_arc:
                line += f" | Arc: {node.character_arc}"
            text += line + "\n"
        text += "\n"

    events = [node for node in nodes if node.node_type == NodeType.EVENT]
    if events:
        text += "## Key Events\n"
        for node in events:
            text += f"- **{node.name}**" + (f": {node.description}" if node.description else "") + "\n"
    return text


def build_recap_prompts(context: str, book_title: str, book_number: int) -> Tuple[str, str]:
    system = f"""You are an expert fiction writer creating a "Previously On..." recap for a book series. Your task is to summarize what happened in the previous book(s) to help readers (and the AI writing assistant) understand the context for the current book.

{context}

## Guidelines for Recap Generation

1. **Length**: Write a concise recap of 300-600 words
2. **Focus on**:
   - Major plot points and how they resolved
   - Character development and relationship changes
   - Unresolved threads or cliffhangers that carry forward
   - Key revelations or world-changing events
   - Where main characters ended up (physically and emotionally)
3. **Tone**: Write in present tense, narrative style (like a TV "Previously on..." recap)
4. **Structure**: Start with the most impactful events, then fill in supporting context
5. **Avoid**: Don't just summarize chapter by chapter - synthesize into a flowing narrative

Write the recap as if introducing Book {book_number} to someone who read the previous book(s) a while ago and needs a refresher. Do not include any preamble, headers, or meta-commentary - just write the recap text directly."""
    prompt = (
        f'Generate a "Previously On..." recap for "{book_title}" (Book {book_number} in the series). '
        "Summarize the key events, character developments, and unresolved threads from the previous book(s)."
    )
    return system, prompt


def previous_books_for(store: StoryStore, book: Book) -> List[Tuple[Book, List[Chapter]]]:
    earlier = [other for other in store.list_books(book.project_id) if other.sort_order < book.sort_order]
    return [(other, store.list_chapters(other.id)) for other in earlier]


def generate_recap(
    provider: UserProvider,
    model: str,
    project: Project,
    book: Book,
    previous_books: List[Tuple[Book, List[Chapter]]],
    nodes: List[StoryNode],
) -> Tuple[str, LLMResult]:
    context = format_series_context(project, previous_books, nodes)
    system, prompt = build_recap_prompts(context, book.title, book.sort_order + 1)
    result = _ask(provider, model, system, prompt)
    return result.text.strip(), result


# ---------------------------------------------------------------------------
# Universe
# ---------------------------------------------------------------------------


class UniverseOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    character_count: int = Field(default=6, ge=0, le=30, alias="characterCount")
    location_count: int = Field(default=4, ge=0, le=30, alias="locationCount")
    faction_count: int = Field(default=2, ge=0, le=30, alias="factionCount")
    item_count: int = Field(default=2, ge=0, le=30, alias="itemCount")
    event_count: int = Field(default=3, ge=0, le=30, alias="eventCount")
    concept_count: int = Field(default=1, ge=0, le=30, alias="conceptCount")

    def total(self) -> int:
        return (
            self.character_count
            + self.location_count
            + self.faction_count
            + self.item_count
            + self.event_count
            + self.concept_count
        )

    def count_for(self, node_type: str) -> int:
        return getattr(self, f"{node_type}_count")


class GeneratedElement(BaseModel):
    name: str
    description: Optional[str] = None
    character_role: Optional[str] = None
    character_arc: Optional[str] = None
    location_type: Optional[str] = None
    event_date: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class GeneratedRelationship(BaseModel):
    source_name: str
    target_name: str
    relationship_type: str = DEFAULT_RELATIONSHIP_TYPE
    description: Optional[str] = None
    is_bidirectional: bool = False


class GeneratedUniverse(BaseModel):
    characters: List[GeneratedElement] = Field(default_factory=list)
    locations: List[GeneratedElement] = Field(default_factory=list)
    factions: List[GeneratedElement] = Field(default_factory=list)
    items: List[GeneratedElement] = Field(default_factory=list)
    events: List[GeneratedElement] = Field(default_factory=list)
    concepts: List[GeneratedElement] = Field(default_factory=list)
    relationships: List[GeneratedRelationship] = Field(default_factory=list)

    def by_type(self) -> Dict[str, List[GeneratedElement]]:
        return {
            "character": self.characters,
            "location": self.locations,
            "faction": self.factions,
            "item": self.items,
            "event": self.events,
            "concept": self.concepts,
        }


class UniverseInsertResult(BaseModel):
    nodes: int
    edges: int
    generated: Dict[str, int]


UNIVERSE_FORMAT = json.dumps(
    {
        "characters": [
            {"name": "", "description": "2-3 sentences", "character_role": "", "character_arc": "", "tags": []}
        ],
        "locations": [{"name": "", "description": "2-3 sentences", "location_type": "", "tags": []}],
        "factions": [{"name": "", "description": "2-3 sentences", "tags": []}],
        "items": [{"name": "", "description": "1-2 sentences", "tags": []}],
        "events": [{"name": "", "description": "2-3 sentences", "event_date": "", "tags": []}],
        "concepts": [{"name": "", "description": "2-3 sentences", "tags": []}],
        "relationships": [
            {
                "source_name": "",
                "target_name": "",
                "relationship_type": "",
                "description": "",
                "is_bidirectional": False,
            }
        ],
    },
    indent=2,
)


def build_universe_prompts(project: Project, options: UniverseOptions, prompt: Optional[str] = None) -> Tuple[str, str]:
    roles = ", ".join(role["value"] for role in CHARACTER_ROLES)
    system = f"""You are a creative fiction writer and worldbuilder. Your task is to generate a rich, interconnected story universe based on the provided project details.

{format_project_brief(project)}

## Generation Requirements

Create the following elements for this story universe:
- **{options.character_count} Characters**: A mix of protagonists, antagonists, and supporting characters appropriate for the genre
- **{options.location_count} Locations**: Key settings where the story takes place
- **{options.faction_count} Factions/Organizations**: Groups, organizations, or factions relevant to the story
- **{options.item_count} Items**: Significant objects (weapons, artifacts, documents, etc.)
- **{options.event_count} Events**: Important backstory events that shaped the world
- **{options.concept_count} Concepts**: World-building elements (magic systems, customs, prophecies, etc.)

## Guidelines

1. **Genre Appropriate**: All elements should fit the {project.genre or "story"} genre
2. **Interconnected**: Create relationships between characters, locations, and factions
3. **Conflict Ready**: Include natural sources of conflict and tension
4. **Diverse Cast**: Create varied characters with different backgrounds and motivations
5. **Thematic**: Elements should support the themes: {", ".join(project.themes) or "universal themes"}

## Valid Character Roles
{roles}

## Valid Location Types
{", ".join(LOCATION_TYPES)}

## Valid Relationship Types
{", ".join(RELATIONSHIP_TYPE_VALUES)}

Create meaningful relationships between the generated elements. Focus on:
- Character-to-character relationships (family, friends, rivals, enemies)
- Character-to-faction memberships and roles
- Character-to-location connections (lives_in, born_in, works_at)
- Faction-to-faction dynamics (allies, rivals, at_war_with)"""

    user_prompt = (
        f'Generate a complete story universe for "{project.title}". Create compelling, interconnected elements '
        "that support the genre, themes, and setting. Ensure characters have clear roles, locations are vivid, "
        "and relationships create potential for conflict and drama."
    )
    if prompt:
        user_prompt += f"\n\nAuthor's notes:\n{prompt}"
    user_prompt += f"\n\nRespond with valid JSON only, no markdown or explanation, in this format:\n{UNIVERSE_FORMAT}"
    return system, user_prompt


def parse_universe(result: LLMResult) -> GeneratedUniverse:
    payload = _parse_object(result, "universe")
    try:
        return GeneratedUniverse.model_validate(payload)
    except ValidationError as exc:
        raise GenerationError(f"Universe did not match the expected shape: {exc.errors()[0]['msg']}") from exc


def calculate_node_positions(counts: Dict[str, int]) -> Dict[str, List[Tuple[float, float]]]:
    """Lay node types out left to right, each in columns of at most five."""
    positions: Dict[str, List[Tuple[float, float]]] = {}
    current_x = 0
    for node_type in LAYOUT_TYPE_ORDER:
        count = counts.get(node_type, 0)
        if count <= 0:
            continue
        columns = -(-count // LAYOUT_MAX_NODES_PER_COLUMN)
        positions[node_type] = [
            (
                current_x + (index // LAYOUT_MAX_NODES_PER_COLUMN) * LAYOUT_HORIZONTAL_SPACING,
                (index % LAYOUT_MAX_NODES_PER_COLUMN) * LAYOUT_VERTICAL_SPACING,
            )
            for index in range(count)
        ]
        current_x += columns * LAYOUT_HORIZONTAL_SPACING + LAYOUT_TYPE_GAP
    return positions


_ROLE_VALUES = {role["value"] for role in CHARACTER_ROLES}


def _element_to_node(project_id: str, node_type: str, element: GeneratedElement, x: float, y: float) -> StoryNode:
    node = StoryNode(
        id=str(uuid.uuid4()),
        project_id=project_id,
        node_type=NodeType(node_type),
        name=element.name.strip(),
        description=element.description,
        tags=element.tags,
        position_x=x,
        position_y=y,
    )
    if node_type == "character":
        node.character_role = element.character_role if element.character_role in _ROLE_VALUES else None
        node.character_arc = element.character_arc
    elif node_type == "location" and element.location_type:
        node.location_type = element.location_type if element.location_type in LOCATION_TYPES else "other"
    elif node_type == "event":
        node.event_date = element.event_date
    return node


def insert_universe(
    store: StoryStore,
    project_id: str,
    universe: GeneratedUniverse,
    options: Optional[UniverseOptions] = None,
) -> UniverseInsertResult:
    """Insert generated nodes and edges.

    Relationship endpoints are matched by case-insensitive name; unmatched
    names and self-links are skipped, unknown relationship types fall back to
    ``related_to``. With ``options``, each type is capped at its requested
    count so the node limit checked up front still holds.
    """
    grouped = universe.by_type()
    if options is not None:
        grouped = {node_type: items[: options.count_for(node_type)] for node_type, items in grouped.items()}
    positions = calculate_node_positions({node_type: len(items) for node_type, items in grouped.items()})

    name_to_id: Dict[str, str] = {}
    inserted_nodes = 0
    for node_type in LAYOUT_TYPE_ORDER:
        for index, element in enumerate(grouped[node_type]):
            if not element.name.strip():
                continue
            x, y = positions[node_type][index]
            node = _element_to_node(project_id, node_type, element, x, y)
            store.save_node(node)
            name_to_id[node.name.lower()] = node.id
            inserted_nodes += 1

    inserted_edges = 0
    for relationship in universe.relationships:
        source_id = name_to_id.get(relationship.source_name.strip().lower())
        target_id = name_to_id.get(relationship.target_name.strip().lower())
        if not source_id or not target_id or source_id == target_id:
            continue
        relationship_type = (
            relationship.relationship_type
            if relationship.relationship_type in RELATIONSHIP_TYPE_VALUES
            else DEFAULT_RELATIONSHIP_TYPE
        )
        store.save_edge(
            StoryEdge(
                id=str(uuid.uuid4()),
                project_id=project_id,
                source_node_id=source_id,
                target_node_id=target_id,
                relationship_type=relationship_type,
                description=relationship.description,
                is_bidirectional=relationship.is_bidirectional,
            )
        )
        inserted_edges += 1

    generated = {f"{node_type}s": len(items) for node_type, items in grouped.items()}
    generated["relationships"] = inserted_edges
    logger.info("universe inserted project_id=%s nodes=%d edges=%d", project_id, inserted_nodes, inserted_edges)
    return UniverseInsertResult(nodes=inserted_nodes, edges=inserted_edges, generated=generated)


def generate_universe(
    provider: UserProvider,
    model: str,
    project: Project,
    options: UniverseOptions,
    prompt: Optional[str] = None,
) -> Tuple[GeneratedUniverse, LLMResult]:
    system, user_prompt = build_universe_prompts(project, options, prompt)
    logger.info(
        "universe generation start project_id=%s model=%s requested_nodes=%d",
        project.id,
        model,
        options.total(),
    )
    result = _ask(provider, model, system, user_prompt, UNIVERSE_MAX_TOKENS)
    return parse_universe(result), result
