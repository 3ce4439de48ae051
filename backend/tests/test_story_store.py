"""Tests for StoryStore persistence and the bounded graph traversal."""

import os
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Set, Tuple

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
    SubscriptionTier,
    UsageRecord,
    UsageStatus,
)
from services.graph_context import process_graph_data
from storage import StoryStore

settings.register_profile("ci", max_examples=200)
settings.register_profile("dev", max_examples=100)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


def _make_store() -> StoryStore:
    tmp = tempfile.mkdtemp()
    return StoryStore(str(Path(tmp) / "test.db"))


def _node(store: StoryStore, project_id: str, node_id: str, node_type=NodeType.CHARACTER, **kwargs) -> StoryNode:
    node = StoryNode(id=node_id, project_id=project_id, node_type=node_type, name=kwargs.pop("name", node_id), **kwargs)
    store.save_node(node)
    return node


def _edge(store: StoryStore, project_id: str, source: str, target: str, edge_id=None, **kwargs) -> StoryEdge:
    edge = StoryEdge(
        id=edge_id or f"{source}-{target}",
        project_id=project_id,
        source_node_id=source,
        target_node_id=target,
        **kwargs,
    )
    store.save_edge(edge)
    return edge


class TestProfiles(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()

    def test_ensure_profile_creates_once(self):
        first = self.store.ensure_profile("user-1", "a@example.com")
        second = self.store.ensure_profile("user-1", "other@example.com")
        self.assertEqual(first.id, second.id)
        self.assertEqual(second.email, "a@example.com")
        self.assertEqual(second.subscription_tier, SubscriptionTier.FREE)

    def test_update_profile_round_trips_json_columns(self):
        self.store.ensure_profile("user-1")
        self.store.update_profile(
            "user-1",
            ai_keys={"anthropic": "sealed"},
            ai_keys_valid={"anthropic": True},
            task_models={"scene": "gpt-4o"},
            onboarding_tooltips_dismissed=["graph"],
        )
        profile = self.store.get_profile("user-1")
        self.assertEqual(profile.ai_keys, {"anthropic": "sealed"})
        self.assertTrue(profile.ai_keys_valid["anthropic"])
        self.assertEqual(profile.task_models["scene"], "gpt-4o")
        self.assertEqual(profile.onboarding_tooltips_dismissed, ["graph"])

    def test_update_profile_writes_only_changed_columns(self):
        self.store.ensure_profile("user-1")
        self.store.increment_words_used("user-1", 40)
        updated = self.store.update_profile("user-1", display_name="Ada")
        self.assertEqual(updated.display_name, "Ada")
        self.assertEqual(updated.words_used_this_month, 40)
        self.assertEqual(self.store.increment_words_used("user-1", 2), 42)

    def test_find_profile_by_customer(self):
        self.store.update_profile("user-1", stripe_customer_id="cus_123")
        found = self.store.find_profile_by_customer("cus_123")
        self.assertIsNotNone(found)
        self.assertEqual(found.id, "user-1")
        self.assertIsNone(self.store.find_profile_by_customer("cus_missing"))


class TestManuscriptTree(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()
        self.store.save_project(Project(id="p1", user_id="u1", title="Saga"))
        self.store.save_book(Book(id="b1", project_id="p1", title="One"))
        self.store.save_chapter(Chapter(id="c1", book_id="b1", title="Start"))
        self.store.save_scene(Scene(id="s1", chapter_id="c1", title="Opening"))

    def test_counts(self):
        self.assertEqual(self.store.count_projects("u1"), 1)
        self.assertEqual(self.store.count_books("p1"), 1)
        self.assertEqual(self.store.count_projects("u2"), 0)

    def test_find_project_for_scene(self):
        located = self.store.find_project_for_scene("s1")
        self.assertIsNotNone(located)
        scene, chapter, book, project = located
        self.assertEqual((scene.id, chapter.id, book.id, project.id), ("s1", "c1", "b1", "p1"))
        self.assertIsNone(self.store.find_project_for_scene("missing"))

    def test_scene_characters_replace_previous_links(self):
        _node(self.store, "p1", "alice")
        _node(self.store, "p1", "bob")
        self.store.set_scene_characters("s1", [SceneCharacter(scene_id="s1", node_id="alice", pov=True)])
        self.store.set_scene_characters("s1", [SceneCharacter(scene_id="s1", node_id="bob")])
        links = self.store.list_scene_characters("s1")
        self.assertEqual([link.node_id for link in links], ["bob"])

    def test_delete_project_cascades(self):
        _node(self.store, "p1", "alice")
        self.store.delete_project("p1")
        self.assertIsNone(self.store.get_book("b1"))
        self.assertIsNone(self.store.get_chapter("c1"))
        self.assertIsNone(self.store.get_scene("s1"))
        self.assertEqual(self.store.list_nodes("p1"), [])


class TestStoryGraph(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()
        self.store.save_project(Project(id="p1", user_id="u1", title="Saga"))
        self.store.save_project(Project(id="p2", user_id="u1", title="Other"))

    def test_edge_endpoints_must_share_project(self):
        _node(self.store, "p1", "alice")
        _node(self.store, "p2", "stranger")
        with self.assertRaises(ValueError):
            _edge(self.store, "p1", "alice", "stranger")

    def test_edge_to_missing_node_rejected(self):
        _node(self.store, "p1", "alice")
        with self.assertRaises(ValueError):
            _edge(self.store, "p1", "alice", "ghost")

    def test_list_nodes_filters_by_type(self):
        _node(self.store, "p1", "alice")
        _node(self.store, "p1", "castle", NodeType.LOCATION)
        self.assertEqual([n.id for n in self.store.list_nodes("p1", "location")], ["castle"])
        self.assertEqual(self.store.count_nodes("p1"), 2)

    def test_subgraph_depths(self):
        # alice -> bob -> carol -> dave
        for node_id in ("alice", "bob", "carol", "dave"):
            _node(self.store, "p1", node_id)
        _edge(self.store, "p1", "alice", "bob")
        _edge(self.store, "p1", "bob", "carol")
        _edge(self.store, "p1", "carol", "dave")

        rows = self.store.get_connected_subgraph("p1", ["alice"], depth=2)
        depths = {}
        for row in rows:
            depths.setdefault(row.node_id, row.depth)
        self.assertEqual(depths, {"alice": 0, "bob": 1, "carol": 2})
        self.assertTrue(all(row.depth <= 2 for row in rows))

    def test_subgraph_walks_incoming_edges(self):
        _node(self.store, "p1", "alice")
        _node(self.store, "p1", "mentor")
        _edge(self.store, "p1", "mentor", "alice", relationship_type="mentor_of")
        rows = self.store.get_connected_subgraph("p1", ["alice"], depth=1)
        reached = [row for row in rows if row.node_id == "mentor"]
        self.assertEqual(len(reached), 1)
        # the row keeps the stored direction of the edge
        self.assertEqual(reached[0].edge_source_id, "mentor")
        self.assertEqual(reached[0].edge_target_id, "alice")
        self.assertEqual(reached[0].connected_to, "alice")

    def test_subgraph_depth_zero_returns_focus_only(self):
        _node(self.store, "p1", "alice")
        _node(self.store, "p1", "bob")
        _edge(self.store, "p1", "alice", "bob")
        rows = self.store.get_connected_subgraph("p1", ["alice"], depth=0)
        self.assertEqual([(row.node_id, row.depth, row.edge_id) for row in rows], [("alice", 0, None)])

    def test_subgraph_respects_book_validity_window(self):
        self.store.save_book(Book(id="b1", project_id="p1", title="One", sort_order=0))
        self.store.save_book(Book(id="b2", project_id="p1", title="Two", sort_order=1))
        self.store.save_book(Book(id="b3", project_id="p1", title="Three", sort_order=2))
        _node(self.store, "p1", "alice")
        _node(self.store, "p1", "bob")
        _node(self.store, "p1", "carol")
        _edge(self.store, "p1", "alice", "bob", valid_from_book_id="b3")
        _edge(self.store, "p1", "alice", "carol", valid_until_book_id="b2")

        rows = self.store.get_connected_subgraph("p1", ["alice"], depth=1, current_book_id="b2")
        reached = {row.node_id for row in rows}
        self.assertEqual(reached, {"alice", "carol"})
        carol = next(row for row in rows if row.node_id == "carol")
        self.assertEqual(carol.valid_until_book_title, "Two")


_GRAPH_NODE_IDS = [f"n{index}" for index in range(6)]


def _hop_distances(edges: List[Tuple[str, str]], focus: List[str]) -> Dict[str, int]:
    neighbours: Dict[str, Set[str]] = {node_id: set() for node_id in _GRAPH_NODE_IDS}
    for source, target in edges:
        neighbours[source].add(target)
        neighbours[target].add(source)
    distances = {node_id: 0 for node_id in focus}
    frontier = list(focus)
    while frontier:
        next_frontier = []
        for current in frontier:
            for neighbour in sorted(neighbours[current]):
                if neighbour not in distances:
                    distances[neighbour] = distances[current] + 1
                    next_frontier.append(neighbour)
        frontier = next_frontier
    return distances


class TestSubgraphDepthBound(unittest.TestCase):
    @given(
        edges=st.lists(
            st.tuples(st.sampled_from(_GRAPH_NODE_IDS), st.sampled_from(_GRAPH_NODE_IDS)).filter(
                lambda pair: pair[0] != pair[1]
            ),
            max_size=12,
        ),
        focus=st.lists(st.sampled_from(_GRAPH_NODE_IDS), min_size=1, max_size=3, unique=True),
        depth=st.integers(min_value=0, max_value=5),
    )
    @settings(deadline=None)
    def test_every_node_is_within_requested_depth(self, edges, focus, depth):
        store = _make_store()
        store.save_project(Project(id="p1", user_id="u1", title="Saga"))
        for node_id in _GRAPH_NODE_IDS:
            _node(store, "p1", node_id)
        for index, (source, target) in enumerate(edges):
            _edge(store, "p1", source, target, edge_id=f"e{index}")

        rows = store.get_connected_subgraph("p1", focus, depth=depth)
        distances = _hop_distances(edges, focus)
        expected = {node_id for node_id, hops in distances.items() if hops <= depth}

        self.assertTrue(all(row.depth <= depth for row in rows))
        self.assertEqual({row.node_id for row in rows}, expected)
        for row in rows:
            self.assertEqual(row.depth, distances[row.node_id])

        nodes, relationships = process_graph_data([], rows, None)
        self.assertEqual({node.id for node in nodes}, expected)
        self.assertTrue(all(node.depth <= depth for node in nodes))
        for relationship in relationships:
            self.assertIn(relationship.source_id, expected)
            self.assertIn(relationship.target_id, expected)


class TestUsageRecords(unittest.TestCase):
    def test_list_filters_by_since_and_status(self):
        store = _make_store()
        old = datetime.now() - timedelta(days=60)
        store.add_usage_record(UsageRecord(id="r1", user_id="u1", endpoint="e", model="m", created_at=old))
        store.add_usage_record(UsageRecord(id="r2", user_id="u1", endpoint="e", model="m"))
        store.add_usage_record(
            UsageRecord(id="r3", user_id="u1", endpoint="e", model="m", status=UsageStatus.ERROR)
        )
        recent = store.list_usage_records("u1", since=datetime.now() - timedelta(days=1), status="success")
        self.assertEqual([record.id for record in recent], ["r2"])


if __name__ == "__main__":
    unittest.main()
