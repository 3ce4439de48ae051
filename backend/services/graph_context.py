"""Scene graph context assembly.

Builds the ``GraphContext`` handed to the prompt formatter for one scene:

* focus nodes (scene characters plus location) at depth 0, tagged with POV;
* nodes reached by a bounded traversal of the story graph, tagged with hop
  distance, plus the relationships connecting them;
* up to two prose excerpts from earlier scenes in the chapter and one from
  the end of the previous chapter;
* chapter summaries for the current book, per-book style settings, and
  backstory events tied to the focus nodes.

The independent reads run concurrently. A failed read degrades to an empty
section; the section name is recorded on ``GraphContext.incomplete_sections``
and logged so the gap is visible.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from models import (
    BookContext,
    ChapterSummary,
    ContextNode,
    ContextRelationship,
    EventContext,
    GraphContext,
    NodeType,
    ProjectMeta,
    SceneCharacter,
    SceneExcerpt,
    SceneMeta,
    StoryNode,
    SubgraphRow,
)
from storage import StoryStore

_logger = logging.getLogger("novelworld.graph_context")

DEFAULT_DEPTH = 2

# Informational prompt budget per section, in tokens.
DEFAULT_TOKEN_BUDGET: Dict[str, int] = {
    "sceneMetadata": 100,
    "povCharacter": 300,
    "directCharacters": 400,
    "relationships": 400,
    "location": 200,
    "previousScenes": 500,
    "chapterContext": 300,
    "twoHopNodes": 200,
    "events": 200,
    "factions": 200,
}

CURRENT_CHAPTER_EXCERPT_CHARS = 500
PREVIOUS_CHAPTER_EXCERPT_CHARS = 300
CURRENT_CHAPTER_SCENE_LIMIT = 2
ELLIPSIS = "..."


class GraphContextOptions(BaseModel):
    scene_id: str
    project_id: str
    book_id: str
    chapter_id: str
    focus_node_ids: List[str] = Field(default_factory=list)
    pov_node_id: Optional[str] = None
    depth: int = DEFAULT_DEPTH


def trim_excerpt(prose: str, limit: int) -> str:
    """Keep the tail of ``prose``; the result including the ellipsis never exceeds ``limit``."""
    if len(prose) <= limit:
        return prose
    return ELLIPSIS + prose[-(limit - len(ELLIPSIS)):]


def _node_from_story_node(node: StoryNode, is_pov: bool) -> ContextNode:
    return ContextNode(
        id=node.id,
        type=node.node_type,
        name=node.name,
        description=node.description,
        attributes=node.attributes,
        character_role=node.character_role,
        character_arc=node.character_arc,
        location_type=node.location_type,
        event_date=node.event_date,
        depth=0,
        is_pov=is_pov,
        tags=node.tags,
    )


def _node_from_row(row: SubgraphRow, pov_node_id: Optional[str]) -> ContextNode:
    return ContextNode(
        id=row.node_id,
        type=row.node_type,
        name=row.node_name,
        description=row.node_description,
        attributes=row.node_attributes,
        character_role=row.node_character_role,
        character_arc=row.node_character_arc,
        location_type=row.node_location_type,
        event_date=row.node_event_date,
        depth=row.depth,
        is_pov=row.node_id == pov_node_id,
        tags=row.node_tags,
    )


def process_graph_data(
    scene_characters: List[Tuple[SceneCharacter, StoryNode]],
    subgraph_rows: List[SubgraphRow],
    pov_node_id: Optional[str],
) -> Tuple[List[ContextNode], List[ContextRelationship]]:
    """Merge direct scene characters with traversal rows.

    Nodes are keyed by id with the first write kept, so the direct-scene
    version of a node wins over its traversal copy. Relationships are keyed
    by edge id and kept only when both endpoints are present.
    """
    nodes: Dict[str, ContextNode] = {}
    relationships: Dict[str, ContextRelationship] = {}

    for link, node in scene_characters:
        if node.id in nodes:
            continue
        nodes[node.id] = _node_from_story_node(node, link.pov or node.id == pov_node_id)

    for row in subgraph_rows:
        if row.node_id not in nodes:
            nodes[row.node_id] = _node_from_row(row, pov_node_id)

        if not row.edge_id or not row.connected_to or row.edge_id in relationships:
            continue
        source_id = row.edge_source_id or row.connected_to
        target_id = row.edge_target_id or row.node_id
        source = nodes.get(source_id)
        target = nodes.get(target_id)
        if source is None or target is None:
            continue
        relationships[row.edge_id] = ContextRelationship(
            id=row.edge_id,
            source_id=source.id,
            source_name=source.name,
            source_type=source.type,
            target_id=target.id,
            target_name=target.name,
            target_type=target.type,
            relationship_type=row.edge_type or "related_to",
            label=row.edge_label,
            description=row.edge_description,
            weight=row.edge_weight if row.edge_weight is not None else 5,
            is_bidirectional=bool(row.edge_is_bidirectional),
            valid_from_book_title=row.valid_from_book_title,
            valid_until_book_title=row.valid_until_book_title,
        )

    ordered = sorted(nodes.values(), key=lambda item: item.depth)
    return ordered, list(relationships.values())


class GraphContextBuilder:
    def __init__(self, store: StoryStore):
        self.store = store

    def get_focus_node_ids(self, scene_id: str) -> Tuple[List[str], Optional[str]]:
        """Scene character ids in link order plus the location; POV from the links, else the scene."""
        focus_node_ids: List[str] = []
        pov_node_id: Optional[str] = None
        for link in self.store.list_scene_characters(scene_id):
            focus_node_ids.append(link.node_id)
            if link.pov:
                pov_node_id = link.node_id

        scene = self.store.get_scene(scene_id)
        if scene is not None:
            if scene.location_id and scene.location_id not in focus_node_ids:
                focus_node_ids.append(scene.location_id)
            if pov_node_id is None and scene.pov_character_id:
                pov_node_id = scene.pov_character_id
        return focus_node_ids, pov_node_id

    async def build(self, options: GraphContextOptions) -> GraphContext:
        fetchers: List[Tuple[str, Callable[[], Any], Any]] = [
            ("scene", lambda: self._fetch_scene(options.scene_id), None),
            ("project", lambda: self._fetch_project(options.project_id), None),
            ("subgraph", lambda: self._fetch_subgraph(options), []),
            ("scene_characters", lambda: self._fetch_scene_characters(options.scene_id), []),
            (
                "previous_scenes",
                lambda: self._fetch_previous_scenes(options.scene_id, options.chapter_id, options.book_id),
                [],
            ),
            ("chapter_summaries", lambda: self._fetch_chapter_summaries(options.book_id), []),
            ("book_context", lambda: self._fetch_book_context(options.project_id, options.book_id), []),
            ("events", lambda: self._fetch_related_events(options.project_id, options.focus_node_ids), []),
        ]
        results = await asyncio.gather(
            *(asyncio.to_thread(fetch) for _, fetch, _ in fetchers),
            return_exceptions=True,
        )

        data: Dict[str, Any] = {}
        incomplete: List[str] = []
        for (name, _, fallback), result in zip(fetchers, results):
            if isinstance(result, Exception):
                _logger.warning(
                    "graph context fetch failed section=%s scene_id=%s context_incomplete=true error=%s",
                    name,
                    options.scene_id,
                    result,
                )
                incomplete.append(name)
                data[name] = fallback
            else:
                data[name] = result

        nodes, relationships = process_graph_data(
            data["scene_characters"],
            data["subgraph"],
            options.pov_node_id,
        )
        scene_meta = data["scene"] or SceneMeta(id=options.scene_id)
        context = GraphContext(
            scene=scene_meta,
            project=data["project"] or ProjectMeta(),
            nodes=nodes,
            relationships=relationships,
            previous_scenes=data["previous_scenes"],
            chapter_summaries=data["chapter_summaries"],
            book_context=data["book_context"],
            events=data["events"],
            focus_node_ids=list(options.focus_node_ids),
            pov_node_id=options.pov_node_id,
            current_book_id=options.book_id,
            current_chapter_id=options.chapter_id,
            incomplete_sections=incomplete,
        )
        _logger.info(
            "graph context built scene_id=%s depth=%d nodes=%d relationships=%d previous_scenes=%d incomplete=%s",
            options.scene_id,
            options.depth,
            len(context.nodes),
            len(context.relationships),
            len(context.previous_scenes),
            ",".join(incomplete) or "-",
        )
        return context

    async def build_for_scene(self, scene_id: str, depth: int = DEFAULT_DEPTH) -> Optional[GraphContext]:
        """Resolve the scene's chapter, book and focus set, then build."""
        located = self.store.find_project_for_scene(scene_id)
        if located is None:
            return None
        scene, chapter, book, project = located
        focus_node_ids, pov_node_id = self.get_focus_node_ids(scene.id)
        return await self.build(
            GraphContextOptions(
                scene_id=scene.id,
                project_id=project.id,
                book_id=book.id,
                chapter_id=chapter.id,
                focus_node_ids=focus_node_ids,
                pov_node_id=pov_node_id,
                depth=depth,
            )
        )

    # ------------------------------------------------------------------
    # Fetchers (run in worker threads)
    # ------------------------------------------------------------------

    def _fetch_scene(self, scene_id: str) -> Optional[SceneMeta]:
        scene = self.store.get_scene(scene_id)
        if scene is None:
            return None
        return SceneMeta(id=scene.id, title=scene.title, time_in_story=scene.time_in_story)

    def _fetch_project(self, project_id: str) -> Optional[ProjectMeta]:
        project = self.store.get_project(project_id)
        if project is None:
            return None
        return ProjectMeta(
            title=project.title or "Untitled Project",
            genre=project.genre,
            world_description=project.world_description,
            themes=project.themes,
            world_setting=project.world_setting,
            time_period=project.time_period,
            series_type=project.series_type,
            target_audience=project.target_audience,
            narrative_conventions=project.narrative_conventions,
        )

    def _fetch_subgraph(self, options: GraphContextOptions) -> List[SubgraphRow]:
        if not options.focus_node_ids:
            return []
        return self.store.get_connected_subgraph(
            options.project_id,
            options.focus_node_ids,
            depth=options.depth,
            current_book_id=options.book_id,
        )

    def _fetch_scene_characters(self, scene_id: str) -> List[Tuple[SceneCharacter, StoryNode]]:
        links = self.store.list_scene_characters(scene_id)
        nodes = {node.id: node for node in self.store.get_nodes([link.node_id for link in links])}
        return [(link, nodes[link.node_id]) for link in links if link.node_id in nodes]

    def _fetch_previous_scenes(self, scene_id: str, chapter_id: str, book_id: str) -> List[SceneExcerpt]:
        excerpts: List[SceneExcerpt] = []
        current_scene = self.store.get_scene(scene_id)
        current_order = current_scene.order_index if current_scene else 0
        chapter = self.store.get_chapter(chapter_id)
        chapter_title = (chapter.title if chapter else None) or "Unknown"

        earlier = [scene for scene in self.store.list_scenes(chapter_id) if scene.order_index < current_order]
        earlier.sort(key=lambda scene: scene.order_index, reverse=True)
        for scene in earlier[:CURRENT_CHAPTER_SCENE_LIMIT]:
            prose = scene.prose
            if not prose:
                continue
            excerpts.append(
                SceneExcerpt(
                    id=scene.id,
                    title=scene.title,
                    excerpt=trim_excerpt(prose, CURRENT_CHAPTER_EXCERPT_CHARS),
                    chapter_title=chapter_title,
                    order_index=scene.order_index,
                    is_current_chapter=True,
                )
            )

        if chapter is None or chapter.order_index <= 0:
            return excerpts

        previous_chapters = [
            item for item in self.store.list_chapters(book_id) if item.order_index < chapter.order_index
        ]
        if not previous_chapters:
            return excerpts
        previous_chapter = max(previous_chapters, key=lambda item: item.order_index)
        scenes = self.store.list_scenes(previous_chapter.id)
        if not scenes:
            return excerpts
        last_scene = max(scenes, key=lambda scene: scene.order_index)
        prose = last_scene.prose
        if prose:
            excerpts.append(
                SceneExcerpt(
                    id=last_scene.id,
                    title=last_scene.title,
                    excerpt=trim_excerpt(prose, PREVIOUS_CHAPTER_EXCERPT_CHARS),
                    chapter_title=previous_chapter.title or "Unknown",
                    order_index=last_scene.order_index,
                    is_current_chapter=False,
                )
            )
        return excerpts

    def _fetch_chapter_summaries(self, book_id: str) -> List[ChapterSummary]:
        book = self.store.get_book(book_id)
        book_title = (book.title if book else None) or "Unknown"
        return [
            ChapterSummary(
                id=chapter.id,
                title=chapter.title,
                summary=chapter.summary,
                order_index=chapter.order_index,
                book_title=book_title,
            )
            for chapter in self.store.list_chapters(book_id)
            if chapter.summary is not None
        ]

    def _fetch_book_context(self, project_id: str, current_book_id: str) -> List[BookContext]:
        return [
            BookContext(
                id=book.id,
                title=book.title,
                synopsis=book.synopsis,
                sort_order=book.sort_order,
                is_current=book.id == current_book_id,
                previously_on=book.previously_on,
                pov_style=book.pov_style,
                tense=book.tense,
                prose_style=book.prose_style,
                pacing=book.pacing,
                dialogue_style=book.dialogue_style,
                content_rating=book.content_rating,
                violence_level=book.violence_level,
                romance_level=book.romance_level,
                tone=book.tone,
            )
            for book in self.store.list_books(project_id)
        ]

    def _fetch_related_events(self, project_id: str, focus_node_ids: List[str]) -> List[EventContext]:
        if not focus_node_ids:
            return []
        focus = set(focus_node_ids)
        nodes = {node.id: node for node in self.store.list_nodes(project_id)}
        edges = self.store.list_edges(project_id)

        events: List[EventContext] = []
        seen = set()
        for edge in edges:
            if edge.target_node_id not in focus:
                continue
            event = nodes.get(edge.source_node_id)
            if event is None or event.node_type != NodeType.EVENT or event.id in seen:
                continue
            seen.add(event.id)
            involved = [
                nodes[other.target_node_id].name
                for other in edges
                if other.source_node_id == event.id
                and other.target_node_id in nodes
                and nodes[other.target_node_id].node_type == NodeType.CHARACTER
            ]
            events.append(
                EventContext(
                    id=event.id,
                    name=event.name,
                    description=event.description,
                    event_date=event.event_date,
                    involved_character_names=involved,
                )
            )
        return events
