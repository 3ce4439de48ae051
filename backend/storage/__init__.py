import json
import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from models import (
    Book,
    Chapter,
    Profile,
    Project,
    Scene,
    SceneCharacter,
    StoryEdge,
    StoryNode,
    SubgraphRow,
    UsageRecord,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

_JSON_COLUMNS = {
    "themes",
    "narrative_conventions",
    "tone",
    "attributes",
    "tags",
    "ai_keys",
    "ai_keys_valid",
    "task_models",
    "onboarding_tooltips_dismissed",
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        email TEXT,
        display_name TEXT,
        subscription_tier TEXT NOT NULL DEFAULT 'free',
        stripe_customer_id TEXT,
        words_used_this_month INTEGER DEFAULT 0,
        words_quota INTEGER,
        billing_period_start TEXT,
        billing_period_end TEXT,
        ai_provider TEXT,
        ai_default_model TEXT,
        ai_keys TEXT,
        ai_keys_valid TEXT,
        ai_api_key_encrypted TEXT,
        ai_api_key_iv TEXT,
        ai_api_key_valid INTEGER DEFAULT 0,
        task_models TEXT,
        onboarding_completed_at TEXT,
        onboarding_current_step TEXT,
        onboarding_skipped_at TEXT,
        onboarding_banner_dismissed_at TEXT,
        onboarding_tooltips_dismissed TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        genre TEXT,
        world_description TEXT,
        themes TEXT,
        world_setting TEXT,
        time_period TEXT,
        series_type TEXT,
        target_audience TEXT,
        narrative_conventions TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        title TEXT NOT NULL,
        subtitle TEXT,
        synopsis TEXT,
        sort_order INTEGER DEFAULT 0,
        previously_on TEXT,
        pov_style TEXT,
        tense TEXT,
        prose_style TEXT,
        pacing TEXT,
        dialogue_style TEXT,
        tone TEXT,
        content_rating TEXT,
        violence_level TEXT,
        romance_level TEXT,
        target_word_count INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chapters (
        id TEXT PRIMARY KEY,
        book_id TEXT NOT NULL,
        title TEXT,
        summary TEXT,
        order_index INTEGER DEFAULT 0,
        sort_order INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scenes (
        id TEXT PRIMARY KEY,
        chapter_id TEXT NOT NULL,
        title TEXT,
        beat_instructions TEXT,
        generated_prose TEXT,
        edited_prose TEXT,
        location_id TEXT,
        pov_character_id TEXT,
        time_in_story TEXT,
        mood TEXT,
        tension_level TEXT,
        order_index INTEGER DEFAULT 0,
        sort_order INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scene_characters (
        scene_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        pov INTEGER DEFAULT 0,
        position INTEGER DEFAULT 0,
        PRIMARY KEY (scene_id, node_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS story_nodes (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        node_type TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        attributes TEXT,
        character_role TEXT,
        character_arc TEXT,
        location_type TEXT,
        event_date TEXT,
        tags TEXT,
        position_x REAL DEFAULT 0,
        position_y REAL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS story_edges (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        source_node_id TEXT NOT NULL,
        target_node_id TEXT NOT NULL,
        relationship_type TEXT NOT NULL DEFAULT 'related_to',
        label TEXT,
        description TEXT,
        weight INTEGER DEFAULT 5,
        is_bidirectional INTEGER DEFAULT 0,
        valid_from_book_id TEXT,
        valid_until_book_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_usage (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        project_id TEXT,
        book_id TEXT,
        scene_id TEXT,
        endpoint TEXT NOT NULL,
        provider TEXT,
        model TEXT NOT NULL,
        input_tokens INTEGER DEFAULT 0,
        output_tokens INTEGER DEFAULT 0,
        cache_creation_input_tokens INTEGER DEFAULT 0,
        cache_read_input_tokens INTEGER DEFAULT 0,
        input_cost_cents REAL DEFAULT 0,
        output_cost_cents REAL DEFAULT 0,
        cache_savings_cents REAL DEFAULT 0,
        total_cost_cents REAL DEFAULT 0,
        request_duration_ms INTEGER,
        status TEXT NOT NULL DEFAULT 'success',
        error_message TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_projects_user ON projects(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_books_project ON books(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_chapters_book ON chapters(book_id)",
    "CREATE INDEX IF NOT EXISTS idx_scenes_chapter ON scenes(chapter_id)",
    "CREATE INDEX IF NOT EXISTS idx_nodes_project ON story_nodes(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_edges_project ON story_edges(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_usage_user ON ai_usage(user_id, created_at)",
)


def _to_column(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


def _from_row(model_cls: Type[ModelT], row: sqlite3.Row) -> ModelT:
    data: Dict[str, Any] = {}
    for key in row.keys():
        if key not in model_cls.model_fields:
            continue
        value = row[key]
        if key in _JSON_COLUMNS:
            value = json.loads(value) if value else None
            if value is None:
                continue
        data[key] = value
    return model_cls.model_validate(data)


class StoryStore:
    """SQLite persistence for profiles, the manuscript tree, the story graph and AI usage."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
        except sqlite3.OperationalError as exc:
            raise sqlite3.OperationalError(f"{exc} (db_path={self.db_path})") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    @contextmanager
    def _connection(self):
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._connection() as conn:
            cursor = conn.cursor()
            for statement in _SCHEMA:
                cursor.execute(statement)
            conn.commit()

    def _upsert(self, table: str, record: BaseModel, exclude: Iterable[str] = (), conflict: str = "REPLACE"):
        data = {
            key: _to_column(value)
            for key, value in record.model_dump().items()
            if key not in set(exclude)
        }
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        with self._connection() as conn:
            conn.execute(
                f"INSERT OR {conflict} INTO {table} ({columns}) VALUES ({placeholders})",
                tuple(data.values()),
            )
            conn.commit()

    def _fetch_one(self, model_cls: Type[ModelT], sql: str, params: Tuple = ()) -> Optional[ModelT]:
        with self._connection() as conn:
            row = conn.execute(sql, params).fetchone()
        return _from_row(model_cls, row) if row else None

    def _fetch_all(self, model_cls: Type[ModelT], sql: str, params: Tuple = ()) -> List[ModelT]:
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_from_row(model_cls, row) for row in rows]

    def _count_rows(self, table: str, where: str = "", params: Tuple = ()) -> int:
        sql = f"SELECT COUNT(*) AS total FROM {table}"
        if where:
            sql += f" WHERE {where}"
        with self._connection() as conn:
            row = conn.execute(sql, params).fetchone()
        return int(row["total"] if row and row["total"] is not None else 0)

    def _execute(self, statements: List[Tuple[str, Tuple]]):
        with self._connection() as conn:
            for sql, params in statements:
                conn.execute(sql, params)
            conn.commit()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, user_id: str) -> Optional[Profile]:
        return self._fetch_one(Profile, "SELECT * FROM profiles WHERE id = ?", (user_id,))

    def ensure_profile(self, user_id: str, email: Optional[str] = None) -> Profile:
        profile = self.get_profile(user_id)
        if profile is None:
            self._upsert("profiles", Profile(id=user_id, email=email), conflict="IGNORE")
            profile = self.get_profile(user_id)
        return profile

    def save_profile(self, profile: Profile):
        profile.updated_at = datetime.now()
        self._upsert("profiles", profile)

    def update_profile(self, user_id: str, **changes: Any) -> Profile:
        """Writes only the changed columns so concurrent updates to other fields survive."""
        profile = self.ensure_profile(user_id)
        updated = Profile.model_validate({**profile.model_dump(), **changes, "updated_at": datetime.now()})
        columns = [key for key in changes if key in Profile.model_fields and key != "id"] + ["updated_at"]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        values = tuple(_to_column(getattr(updated, column)) for column in columns)
        self._execute([(f"UPDATE profiles SET {assignments} WHERE id = ?", values + (user_id,))])
        return self.get_profile(user_id)

    def increment_words_used(self, user_id: str, words: int) -> int:
        """Adds to the monthly counter in one statement; returns the new total."""
        self.ensure_profile(user_id)
        with self._connection() as conn:
            conn.execute(
                "UPDATE profiles SET words_used_this_month = words_used_this_month + ?, updated_at = ? "
                "WHERE id = ?",
                (words, datetime.now().isoformat(), user_id),
            )
            row = conn.execute("SELECT words_used_this_month FROM profiles WHERE id = ?", (user_id,)).fetchone()
            conn.commit()
        return int(row["words_used_this_month"])

    def find_profile_by_customer(self, customer_id: str) -> Optional[Profile]:
        return self._fetch_one(
            Profile,
            "SELECT * FROM profiles WHERE stripe_customer_id = ?",
            (customer_id,),
        )

    # ------------------------------------------------------------------
    # Projects / books / chapters / scenes
    # ------------------------------------------------------------------

    def save_project(self, project: Project):
        project.updated_at = datetime.now()
        self._upsert("projects", project)

    def get_project(self, project_id: str) -> Optional[Project]:
        return self._fetch_one(Project, "SELECT * FROM projects WHERE id = ?", (project_id,))

    def list_projects(self, user_id: str) -> List[Project]:
        return self._fetch_all(
            Project,
            "SELECT * FROM projects WHERE user_id = ? ORDER BY updated_at DESC, id",
            (user_id,),
        )

    def count_projects(self, user_id: str) -> int:
        return self._count_rows("projects", "user_id = ?", (user_id,))

    def delete_project(self, project_id: str):
        for book in self.list_books(project_id):
            self.delete_book(book.id)
        self._execute(
            [
                ("DELETE FROM story_edges WHERE project_id = ?", (project_id,)),
                (
                    "DELETE FROM scene_characters WHERE node_id IN "
                    "(SELECT id FROM story_nodes WHERE project_id = ?)",
                    (project_id,),
                ),
                ("DELETE FROM story_nodes WHERE project_id = ?", (project_id,)),
                ("DELETE FROM projects WHERE id = ?", (project_id,)),
            ]
        )

    def save_book(self, book: Book):
        book.updated_at = datetime.now()
        self._upsert("books", book)

    def get_book(self, book_id: str) -> Optional[Book]:
        return self._fetch_one(Book, "SELECT * FROM books WHERE id = ?", (book_id,))

    def list_books(self, project_id: str) -> List[Book]:
        return self._fetch_all(
            Book,
            "SELECT * FROM books WHERE project_id = ? ORDER BY sort_order, created_at, id",
            (project_id,),
        )

    def count_books(self, project_id: str) -> int:
        return self._count_rows("books", "project_id = ?", (project_id,))

    def delete_book(self, book_id: str):
        for chapter in self.list_chapters(book_id):
            self.delete_chapter(chapter.id)
        self._execute(
            [
                (
                    "UPDATE story_edges SET valid_from_book_id = NULL WHERE valid_from_book_id = ?",
                    (book_id,),
                ),
                (
                    "UPDATE story_edges SET valid_until_book_id = NULL WHERE valid_until_book_id = ?",
                    (book_id,),
                ),
                ("DELETE FROM books WHERE id = ?", (book_id,)),
            ]
        )

    def save_chapter(self, chapter: Chapter):
        chapter.updated_at = datetime.now()
        self._upsert("chapters", chapter)

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        return self._fetch_one(Chapter, "SELECT * FROM chapters WHERE id = ?", (chapter_id,))

    def list_chapters(self, book_id: str) -> List[Chapter]:
        return self._fetch_all(
            Chapter,
            "SELECT * FROM chapters WHERE book_id = ? ORDER BY order_index, created_at, id",
            (book_id,),
        )

    def delete_chapter(self, chapter_id: str):
        self._execute(
            [
                (
                    "DELETE FROM scene_characters WHERE scene_id IN "
                    "(SELECT id FROM scenes WHERE chapter_id = ?)",
                    (chapter_id,),
                ),
                ("DELETE FROM scenes WHERE chapter_id = ?", (chapter_id,)),
                ("DELETE FROM chapters WHERE id = ?", (chapter_id,)),
            ]
        )

    def save_scene(self, scene: Scene):
        scene.updated_at = datetime.now()
        self._upsert("scenes", scene)

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        return self._fetch_one(Scene, "SELECT * FROM scenes WHERE id = ?", (scene_id,))

    def list_scenes(self, chapter_id: str) -> List[Scene]:
        return self._fetch_all(
            Scene,
            "SELECT * FROM scenes WHERE chapter_id = ? ORDER BY order_index, created_at, id",
            (chapter_id,),
        )

    def delete_scene(self, scene_id: str):
        self._execute(
            [
                ("DELETE FROM scene_characters WHERE scene_id = ?", (scene_id,)),
                ("DELETE FROM scenes WHERE id = ?", (scene_id,)),
            ]
        )

    def set_scene_characters(self, scene_id: str, links: List[SceneCharacter]):
        statements: List[Tuple[str, Tuple]] = [
            ("DELETE FROM scene_characters WHERE scene_id = ?", (scene_id,))
        ]
        for position, link in enumerate(links):
            statements.append(
                (
                    "INSERT OR REPLACE INTO scene_characters (scene_id, node_id, pov, position) "
                    "VALUES (?, ?, ?, ?)",
                    (scene_id, link.node_id, int(link.pov), position),
                )
            )
        self._execute(statements)

    def list_scene_characters(self, scene_id: str) -> List[SceneCharacter]:
        return self._fetch_all(
            SceneCharacter,
            "SELECT * FROM scene_characters WHERE scene_id = ? ORDER BY position",
            (scene_id,),
        )

    def find_project_for_scene(self, scene_id: str) -> Optional[Tuple[Scene, Chapter, Book, Project]]:
        scene = self.get_scene(scene_id)
        if scene is None:
            return None
        chapter = self.get_chapter(scene.chapter_id)
        book = self.get_book(chapter.book_id) if chapter else None
        project = self.get_project(book.project_id) if book else None
        if chapter is None or book is None or project is None:
            return None
        return scene, chapter, book, project

    # ------------------------------------------------------------------
    # Story graph
    # ------------------------------------------------------------------

    def save_node(self, node: StoryNode):
        node.updated_at = datetime.now()
        self._upsert("story_nodes", node)

    def get_node(self, node_id: str) -> Optional[StoryNode]:
        return self._fetch_one(StoryNode, "SELECT * FROM story_nodes WHERE id = ?", (node_id,))

    def get_nodes(self, node_ids: List[str]) -> List[StoryNode]:
        if not node_ids:
            return []
        placeholders = ", ".join("?" for _ in node_ids)
        nodes = self._fetch_all(
            StoryNode,
            f"SELECT * FROM story_nodes WHERE id IN ({placeholders})",
            tuple(node_ids),
        )
        by_id = {node.id: node for node in nodes}
        return [by_id[node_id] for node_id in node_ids if node_id in by_id]

    def list_nodes(self, project_id: str, node_type: Optional[str] = None) -> List[StoryNode]:
        if node_type:
            return self._fetch_all(
                StoryNode,
                "SELECT * FROM story_nodes WHERE project_id = ? AND node_type = ? ORDER BY created_at, id",
                (project_id, node_type),
            )
        return self._fetch_all(
            StoryNode,
            "SELECT * FROM story_nodes WHERE project_id = ? ORDER BY created_at, id",
            (project_id,),
        )

    def count_nodes(self, project_id: str) -> int:
        return self._count_rows("story_nodes", "project_id = ?", (project_id,))

    def delete_node(self, node_id: str):
        self._execute(
            [
                (
                    "DELETE FROM story_edges WHERE source_node_id = ? OR target_node_id = ?",
                    (node_id, node_id),
                ),
                ("DELETE FROM scene_characters WHERE node_id = ?", (node_id,)),
                ("UPDATE scenes SET location_id = NULL WHERE location_id = ?", (node_id,)),
                ("UPDATE scenes SET pov_character_id = NULL WHERE pov_character_id = ?", (node_id,)),
                ("DELETE FROM story_nodes WHERE id = ?", (node_id,)),
            ]
        )

    def save_edge(self, edge: StoryEdge):
        """Persist an edge; both endpoints must exist in the edge's project."""
        for endpoint in (edge.source_node_id, edge.target_node_id):
            node = self.get_node(endpoint)
            if node is None:
                raise ValueError(f"Story node not found: {endpoint}")
            if node.project_id != edge.project_id:
                raise ValueError("Edge endpoints must belong to the same project as the edge")
        self._upsert("story_edges", edge)

    def get_edge(self, edge_id: str) -> Optional[StoryEdge]:
        return self._fetch_one(StoryEdge, "SELECT * FROM story_edges WHERE id = ?", (edge_id,))

    def list_edges(self, project_id: str) -> List[StoryEdge]:
        return self._fetch_all(
            StoryEdge,
            "SELECT * FROM story_edges WHERE project_id = ? ORDER BY created_at, id",
            (project_id,),
        )

    def delete_edge(self, edge_id: str):
        self._execute([("DELETE FROM story_edges WHERE id = ?", (edge_id,))])

    def get_connected_subgraph(
        self,
        project_id: str,
        focus_node_ids: List[str],
        depth: int = 2,
        current_book_id: Optional[str] = None,
    ) -> List[SubgraphRow]:
        """Bounded breadth-first traversal from the focus nodes.

        Focus nodes come back at depth 0 without an edge. Each hop walks
        incident edges in both directions and emits one row per edge, tagged
        with the neighbour's hop distance. Edges whose validity window (by
        book sort order) excludes the current book are not followed.
        """
        nodes = {node.id: node for node in self.list_nodes(project_id)}
        books = {book.id: book for book in self.list_books(project_id)}
        current_order = books[current_book_id].sort_order if current_book_id in books else None

        adjacency: Dict[str, List[Tuple[StoryEdge, str]]] = defaultdict(list)
        for edge in self.list_edges(project_id):
            if edge.source_node_id not in nodes or edge.target_node_id not in nodes:
                continue
            if not self._edge_visible(edge, books, current_order):
                continue
            adjacency[edge.source_node_id].append((edge, edge.target_node_id))
            adjacency[edge.target_node_id].append((edge, edge.source_node_id))

        visited: Dict[str, int] = {}
        rows: List[SubgraphRow] = []
        for node_id in focus_node_ids:
            if node_id in nodes and node_id not in visited:
                visited[node_id] = 0
                rows.append(self._subgraph_row(nodes[node_id], depth=0))

        frontier = list(visited)
        seen_edges = set()
        for hop in range(max(depth, 0)):
            next_frontier: List[str] = []
            for current in frontier:
                for edge, neighbour in adjacency.get(current, []):
                    if edge.id in seen_edges:
                        continue
                    seen_edges.add(edge.id)
                    if neighbour not in visited:
                        visited[neighbour] = hop + 1
                        next_frontier.append(neighbour)
                    rows.append(
                        self._subgraph_row(
                            nodes[neighbour],
                            depth=visited[neighbour],
                            edge=edge,
                            connected_to=current,
                            books=books,
                        )
                    )
            frontier = next_frontier
        return rows

    @staticmethod
    def _edge_visible(edge: StoryEdge, books: Dict[str, Book], current_order: Optional[int]) -> bool:
        if current_order is None:
            return True
        start = books.get(edge.valid_from_book_id) if edge.valid_from_book_id else None
        if start is not None and start.sort_order > current_order:
            return False
        end = books.get(edge.valid_until_book_id) if edge.valid_until_book_id else None
        if end is not None and end.sort_order < current_order:
            return False
        return True

    @staticmethod
    def _subgraph_row(
        node: StoryNode,
        depth: int,
        edge: Optional[StoryEdge] = None,
        connected_to: Optional[str] = None,
        books: Optional[Dict[str, Book]] = None,
    ) -> SubgraphRow:
        row = SubgraphRow(
            node_id=node.id,
            node_type=node.node_type,
            node_name=node.name,
            node_description=node.description,
            node_attributes=node.attributes,
            node_character_role=node.character_role,
            node_character_arc=node.character_arc,
            node_location_type=node.location_type,
            node_event_date=node.event_date,
            node_tags=node.tags,
            connected_to=connected_to,
            depth=depth,
        )
        if edge is not None:
            books = books or {}
            start = books.get(edge.valid_from_book_id or "")
            end = books.get(edge.valid_until_book_id or "")
            row.edge_id = edge.id
            row.edge_source_id = edge.source_node_id
            row.edge_target_id = edge.target_node_id
            row.edge_type = edge.relationship_type
            row.edge_label = edge.label
            row.edge_description = edge.description
            row.edge_weight = edge.weight
            row.edge_is_bidirectional = edge.is_bidirectional
            row.valid_from_book_title = start.title if start else None
            row.valid_until_book_title = end.title if end else None
        return row

    # ------------------------------------------------------------------
    # AI usage
    # ------------------------------------------------------------------

    def add_usage_record(self, record: UsageRecord):
        self._upsert("ai_usage", record)

    def list_usage_records(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        status: Optional[str] = None,
    ) -> List[UsageRecord]:
        sql = "SELECT * FROM ai_usage WHERE user_id = ?"
        params: List[Any] = [user_id]
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(since.isoformat())
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at, id"
        return self._fetch_all(UsageRecord, sql, tuple(params))
