import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from core.llm_client import LLMResult, LLMUsage
from models import Book, Chapter, NodeType, Project, StoryEdge, StoryNode
from services.provider_resolution import UserProvider
from services.story_generation import (
    GeneratedUniverse,
    GenerationError,
    UniverseOptions,
    calculate_node_positions,
    format_universe_context,
    generate_outline,
    generate_recap,
    generate_synopsis,
    insert_universe,
    parse_outline,
    previous_books_for,
)
from storage import StoryStore


def _make_store() -> StoryStore:
    tmp = tempfile.mkdtemp()
    return StoryStore(str(Path(tmp) / "test.db"))


def _provider(text: str) -> UserProvider:
    client = MagicMock()
    client.chat.return_value = LLMResult(
        text=text,
        model="claude-sonnet-4-20250514",
        usage=LLMUsage(input_tokens=100, output_tokens=50),
    )
    return UserProvider(client=client, provider="anthropic", default_model_id="claude-sonnet-4-20250514")


def _result(text: str) -> LLMResult:
    return LLMResult(text=text, model="m")


class TestLayout(unittest.TestCase):
    def test_columns_of_five_with_type_gap(self):
        positions = calculate_node_positions({"character": 7, "location": 2, "item": 0})
        self.assertEqual(positions["character"][0], (0, 0))
        self.assertEqual(positions["character"][4], (0, 800))
        self.assertEqual(positions["character"][5], (400, 0))
        # two character columns, then the gap
        self.assertEqual(positions["location"], [(1300, 0), (1300, 200)])
        self.assertNotIn("item", positions)


class TestUniverseContext(unittest.TestCase):
    def test_sections_and_relationships(self):
        project = Project(id="p1", user_id="u1", title="Saga", genre="Fantasy", themes=["loss"])
        book = Book(id="b1", project_id="p1", title="One", tense="past", target_word_count=90000)
        nodes = [
            StoryNode(id="a", project_id="p1", node_type=NodeType.CHARACTER, name="Alice", character_role="protagonist"),
            StoryNode(id="c", project_id="p1", node_type=NodeType.LOCATION, name="Castle", description="Old"),
        ]
        edges = [
            StoryEdge(id="e1", project_id="p1", source_node_id="a", target_node_id="c", relationship_type="lives_in"),
            StoryEdge(id="e2", project_id="p1", source_node_id="a", target_node_id="ghost"),
        ]
        text = format_universe_context(project, book, nodes, edges)
        self.assertIn("Themes: loss\n", text)
        self.assertIn("Target Length: ~90,000 words", text)
        self.assertIn("## Characters\n- Alice (protagonist)\n", text)
        self.assertIn("## Locations\n- Castle: Old\n", text)
        self.assertTrue(text.endswith("## Key Relationships\n- Alice lives in Castle"))


class TestOutline(unittest.TestCase):
    def test_unknown_mood_and_tension_are_dropped(self):
        payload = {
            "chapters": [
                {
                    "title": "Arrival",
                    "summary": "They land.",
                    "scenes": [
                        {"beat_instructions": "The ship docks.", "mood": "giddy", "tension_level": "high"},
                    ],
                }
            ]
        }
        outline = parse_outline(_result("```json\n" + json.dumps(payload) + "\n```"))
        scene = outline.chapters[0].scenes[0]
        self.assertIsNone(scene.mood)
        self.assertEqual(scene.tension_level, "high")
        self.assertEqual(outline.word_count(), 1 + 2 + 3)

    def test_unparseable_response(self):
        with self.assertRaises(GenerationError):
            parse_outline(_result("I'd be happy to help!"))
        with self.assertRaises(GenerationError):
            parse_outline(_result('{"chapters": [{"summary": "no title"}]}'))

    def test_generate_outline_uses_requested_model(self):
        provider = _provider(json.dumps({"chapters": [{"title": "One", "scenes": []}]}))
        project = Project(id="p1", user_id="u1", title="Saga")
        book = Book(id="b1", project_id="p1", title="Dawn")
        outline, result = generate_outline(provider, "claude-opus-4-20250514", project, book, [], [], "3")
        self.assertEqual(outline.chapters[0].title, "One")
        self.assertEqual(result.usage.input_tokens, 100)
        kwargs = provider.client.chat.call_args.kwargs
        self.assertEqual(kwargs["model"], "claude-opus-4-20250514")
        self.assertIn("Create 3 chapters", kwargs["system"])


class TestSynopsisAndRecap(unittest.TestCase):
    def test_existing_synopsis_is_not_sent(self):
        provider = _provider("  A storm rises.  ")
        project = Project(id="p1", user_id="u1", title="Saga")
        book = Book(id="b1", project_id="p1", title="Dawn", synopsis="OLD SYNOPSIS")
        synopsis, _ = generate_synopsis(provider, "m", project, book, [], [])
        self.assertEqual(synopsis, "A storm rises.")
        self.assertNotIn("OLD SYNOPSIS", provider.client.chat.call_args.kwargs["system"])

    def test_recap_uses_earlier_books_only(self):
        store = _make_store()
        store.save_project(Project(id="p1", user_id="u1", title="Saga"))
        first = Book(id="b1", project_id="p1", title="Dawn", synopsis="It began.", sort_order=0)
        second = Book(id="b2", project_id="p1", title="Dusk", sort_order=1)
        store.save_book(first)
        store.save_book(second)
        store.save_chapter(Chapter(id="c1", book_id="b1", title="Start", summary="Alice leaves.", order_index=0))
        store.save_chapter(Chapter(id="c2", book_id="b2", title="Later", summary="Should not appear."))

        previous = previous_books_for(store, second)
        self.assertEqual([book.id for book, _ in previous], ["b1"])
        self.assertEqual(previous_books_for(store, first), [])

        provider = _provider("Previously...")
        recap, _ = generate_recap(provider, "m", store.get_project("p1"), second, previous, [])
        self.assertEqual(recap, "Previously...")
        kwargs = provider.client.chat.call_args.kwargs
        self.assertIn("- Start: Alice leaves.", kwargs["system"])
        self.assertNotIn("Should not appear", kwargs["system"])
        self.assertIn("(Book 2 in the series)", provider.client.chat.call_args.args[0][0]["content"])


class TestInsertUniverse(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()
        self.store.save_project(Project(id="p1", user_id="u1", title="Saga"))

    def test_inserts_nodes_and_matches_names(self):
        universe = GeneratedUniverse.model_validate(
            {
                "characters": [
                    {"name": "Alice", "character_role": "protagonist"},
                    {"name": "Bob", "character_role": "sidekick"},
                    {"name": "   "},
                ],
                "locations": [{"name": "Harbor", "location_type": "port"}],
                "relationships": [
                    {"source_name": "alice", "target_name": "BOB", "relationship_type": "friend_of"},
                    {"source_name": "Alice", "target_name": "Harbor", "relationship_type": "haunts"},
                    {"source_name": "Alice", "target_name": "Alice"},
                    {"source_name": "Alice", "target_name": "Nobody"},
                ],
            }
        )
        result = insert_universe(self.store, "p1", universe)
        self.assertEqual(result.nodes, 3)
        self.assertEqual(result.edges, 2)
        self.assertEqual(result.generated["characters"], 3)
        self.assertEqual(result.generated["relationships"], 2)

        nodes = {node.name: node for node in self.store.list_nodes("p1")}
        self.assertEqual(nodes["Alice"].character_role, "protagonist")
        self.assertIsNone(nodes["Bob"].character_role)
        self.assertEqual(nodes["Harbor"].location_type, "other")
        self.assertEqual(nodes["Harbor"].position_x, 900)

        types = sorted(edge.relationship_type for edge in self.store.list_edges("p1"))
        self.assertEqual(types, ["friend_of", "related_to"])

    def test_caps_each_type_at_requested_count(self):
        universe = GeneratedUniverse.model_validate(
            {
                "characters": [{"name": f"Hero {i}"} for i in range(5)],
                "locations": [{"name": "Harbor"}, {"name": "Lighthouse"}],
                "items": [{"name": "Compass"}],
                "relationships": [
                    {"source_name": "Hero 0", "target_name": "Harbor", "relationship_type": "lives_in"},
                    {"source_name": "Hero 4", "target_name": "Harbor", "relationship_type": "lives_in"},
                ],
            }
        )
        options = UniverseOptions.model_validate(
            {"characterCount": 2, "locationCount": 1, "factionCount": 0, "itemCount": 0, "eventCount": 0, "conceptCount": 0}
        )
        result = insert_universe(self.store, "p1", universe, options)
        self.assertEqual(result.nodes, 3)
        self.assertEqual(result.edges, 1)
        names = sorted(node.name for node in self.store.list_nodes("p1"))
        self.assertEqual(names, ["Harbor", "Hero 0", "Hero 1"])

    def test_options_total(self):
        options = UniverseOptions.model_validate({"characterCount": 2, "locationCount": 0})
        self.assertEqual(options.total(), 2 + 0 + 2 + 2 + 3 + 1)


if __name__ == "__main__":
    unittest.main()
