"""Tests for scene graph context assembly."""

import asyncio
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from hypothesis import given, settings, strategies as st

from models import (
    Book,
    Chapter,
    NodeType,
    Project,
    Scene,
    SceneCharacter,
    StoryEdge,
    StoryNode,
    SubgraphRow,
)
from services.graph_context import (
    CURRENT_CHAPTER_EXCERPT_CHARS,
    PREVIOUS_CHAPTER_EXCERPT_CHARS,
    GraphContextBuilder,
    process_graph_data,
    trim_excerpt,
)
from storage import StoryStore

settings.register_profile("ci", max_examples=200)
settings.register_profile("dev", max_examples=100)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


def _make_store() -> StoryStore:
    tmp = tempfile.mkdtemp()
    return StoryStore(str(Path(tmp) / "test.db"))


def _seed(store: StoryStore):
    """Two chapters; the scene under test is the third scene of chapter two."""
    store.save_project(Project(id="p1", user_id="u1", title="Saga", genre="Fantasy"))
    store.save_book(Book(id="b1", project_id="p1", title="Book One", pov_style="first_person", tense="past"))
    store.save_chapter(Chapter(id="c1", book_id="b1", title="Dawn", summary="It begins.", order_index=0))
    store.save_chapter(Chapter(id="c2", book_id="b1", title="Dusk", summary="It ends.", order_index=1))
    store.save_scene(Scene(id="c1s1", chapter_id="c1", title="First", generated_prose="x" * 1000, order_index=0))
    store.save_scene(Scene(id="c2s1", chapter_id="c2", title="A", generated_prose="a" * 800, order_index=0))
    store.save_scene(Scene(id="c2s2", chapter_id="c2", title="B", edited_prose="b" * 100, order_index=1))
    store.save_scene(
        Scene(id="c2s3", chapter_id="c2", title="C", order_index=2, location_id="castle", time_in_story="Night")
    )

    for node_id, node_type in (
        ("alice", NodeType.CHARACTER),
        ("bob", NodeType.CHARACTER),
        ("castle", NodeType.LOCATION),
        ("war", NodeType.EVENT),
        ("guild", NodeType.FACTION),
    ):
        store.save_node(StoryNode(id=node_id, project_id="p1", node_type=node_type, name=node_id.title()))
    for edge_id, source, target, rel in (
        ("e1", "alice", "bob", "friend_of"),
        ("e2", "war", "alice", "affects"),
        ("e3", "bob", "guild", "member_of"),
    ):
        store.save_edge(
            StoryEdge(id=edge_id, project_id="p1", source_node_id=source, target_node_id=target, relationship_type=rel)
        )
    store.set_scene_characters("c2s3", [SceneCharacter(scene_id="c2s3", node_id="alice", pov=True)])


_text = st.text(min_size=0, max_size=2000)


class TestTrimExcerpt(unittest.TestCase):
    @given(prose=_text, limit=st.sampled_from([CURRENT_CHAPTER_EXCERPT_CHARS, PREVIOUS_CHAPTER_EXCERPT_CHARS]))
    def test_never_exceeds_limit(self, prose, limit):
        excerpt = trim_excerpt(prose, limit)
        self.assertLessEqual(len(excerpt), limit)
        if len(prose) <= limit:
            self.assertEqual(excerpt, prose)
        else:
            self.assertTrue(excerpt.startswith("..."))
            self.assertTrue(prose.endswith(excerpt[3:]))


_node_ids = st.lists(st.sampled_from(["a", "b", "c", "d", "e"]), min_size=0, max_size=5, unique=True)


def _story_node(node_id: str) -> StoryNode:
    return StoryNode(id=node_id, project_id="p1", node_type=NodeType.CHARACTER, name=f"direct-{node_id}")


def _row(node_id: str, depth: int) -> SubgraphRow:
    return SubgraphRow(node_id=node_id, node_type=NodeType.CHARACTER, node_name=f"walked-{node_id}", depth=depth)


class TestProcessGraphData(unittest.TestCase):
    @given(direct=_node_ids, walked=st.lists(st.tuples(st.sampled_from("abcdef"), st.integers(0, 3)), max_size=10))
    def test_nodes_are_unique_and_direct_wins(self, direct, walked):
        scene_characters = [(SceneCharacter(scene_id="s", node_id=node_id), _story_node(node_id)) for node_id in direct]
        rows = [_row(node_id, depth) for node_id, depth in walked]
        nodes, _ = process_graph_data(scene_characters, rows, None)

        ids = [node.id for node in nodes]
        self.assertEqual(len(ids), len(set(ids)))
        by_id = {node.id: node for node in nodes}
        for node_id in direct:
            self.assertEqual(by_id[node_id].name, f"direct-{node_id}")
            self.assertEqual(by_id[node_id].depth, 0)
        depths = [node.depth for node in nodes]
        self.assertEqual(depths, sorted(depths))

    def test_relationship_needs_both_endpoints(self):
        rows = [
            _row("a", 0),
            SubgraphRow(
                node_id="b",
                node_type=NodeType.CHARACTER,
                node_name="B",
                depth=1,
                edge_id="e1",
                edge_source_id="a",
                edge_target_id="b",
                edge_type="friend_of",
                connected_to="a",
            ),
            SubgraphRow(
                node_id="c",
                node_type=NodeType.CHARACTER,
                node_name="C",
                depth=1,
                edge_id="e2",
                edge_source_id="ghost",
                edge_target_id="c",
                connected_to="a",
            ),
        ]
        _, relationships = process_graph_data([], rows, "a")
        self.assertEqual([rel.id for rel in relationships], ["e1"])
        self.assertEqual(relationships[0].source_name, "walked-a")
        self.assertEqual(relationships[0].relationship_type, "friend_of")

    def test_pov_flag(self):
        link = SceneCharacter(scene_id="s", node_id="a", pov=False)
        nodes, _ = process_graph_data([(link, _story_node("a"))], [_row("b", 1)], "a")
        self.assertTrue(nodes[0].is_pov)
        self.assertFalse(nodes[1].is_pov)


class TestGraphContextBuilder(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()
        _seed(self.store)
        self.builder = GraphContextBuilder(self.store)

    def test_focus_nodes_include_location(self):
        focus, pov = self.builder.get_focus_node_ids("c2s3")
        self.assertEqual(focus, ["alice", "castle"])
        self.assertEqual(pov, "alice")

    def test_build_for_scene(self):
        context = asyncio.run(self.builder.build_for_scene("c2s3", depth=2))
        self.assertIsNotNone(context)
        self.assertEqual(context.incomplete_sections, [])
        self.assertEqual(context.project.title, "Saga")
        self.assertEqual(context.scene.time_in_story, "Night")

        by_id = {node.id: node for node in context.nodes}
        self.assertEqual(by_id["alice"].depth, 0)
        self.assertTrue(by_id["alice"].is_pov)
        self.assertEqual(by_id["castle"].depth, 0)
        self.assertEqual(by_id["bob"].depth, 1)
        self.assertEqual(by_id["guild"].depth, 2)
        self.assertTrue(all(node.depth <= 2 for node in context.nodes))
        self.assertIn("e1", {rel.id for rel in context.relationships})

        self.assertEqual([event.id for event in context.events], ["war"])
        self.assertEqual(context.events[0].involved_character_names, ["Alice"])

    def test_previous_scene_excerpts(self):
        context = asyncio.run(self.builder.build_for_scene("c2s3", depth=1))
        excerpts = context.previous_scenes
        self.assertEqual([item.id for item in excerpts], ["c2s2", "c2s1", "c1s1"])
        self.assertEqual(excerpts[0].excerpt, "b" * 100)
        self.assertEqual(len(excerpts[1].excerpt), CURRENT_CHAPTER_EXCERPT_CHARS)
        self.assertFalse(excerpts[2].is_current_chapter)
        self.assertEqual(excerpts[2].chapter_title, "Dawn")
        self.assertLessEqual(len(excerpts[2].excerpt), PREVIOUS_CHAPTER_EXCERPT_CHARS)

    def test_missing_scene(self):
        self.assertIsNone(asyncio.run(self.builder.build_for_scene("missing")))

    def test_failed_section_degrades(self):
        with patch.object(StoryStore, "list_edges", side_effect=RuntimeError("db down")):
            context = asyncio.run(self.builder.build_for_scene("c2s3"))
        self.assertIn("subgraph", context.incomplete_sections)
        self.assertIn("events", context.incomplete_sections)
        self.assertEqual(context.project.title, "Saga")
        self.assertEqual({node.id for node in context.nodes}, {"alice"})


if __name__ == "__main__":
    unittest.main()
