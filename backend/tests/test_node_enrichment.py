import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from core.llm_client import LLMResult
from models import NodeType, Project, StoryNode
from services.node_enrichment import (
    EnrichedNode,
    build_enrichment_prompts,
    enrich_nodes,
    merge_enrichment,
    missing_attribute_keys,
    parse_enrichment,
)
from services.provider_resolution import UserProvider
from services.story_generation import GenerationError
from storage import StoryStore


def _make_store() -> StoryStore:
    tmp = tempfile.mkdtemp()
    return StoryStore(str(Path(tmp) / "test.db"))


class TestMergeEnrichment(unittest.TestCase):
    def setUp(self):
        self.node = StoryNode(
            id="n1",
            project_id="p1",
            node_type=NodeType.CHARACTER,
            name="Alice",
            description="A pilot with a grudge.",
            attributes={"age": "30", "occupation": "pilot"},
        )

    def test_new_attribute_values_win(self):
        merged = merge_enrichment(self.node, EnrichedNode(id="n1", attributes={"age": "31", "fears": ["water"]}))
        self.assertEqual(merged.attributes, {"age": "31", "occupation": "pilot", "fears": ["water"]})
        self.assertEqual(self.node.attributes["age"], "30")

    def test_description_replaced_only_when_longer(self):
        shorter = merge_enrichment(self.node, EnrichedNode(id="n1", description="A pilot."))
        self.assertEqual(shorter.description, "A pilot with a grudge.")
        longer = merge_enrichment(
            self.node,
            EnrichedNode(id="n1", description="A decorated pilot with a grudge against the navy."),
        )
        self.assertEqual(longer.description, "A decorated pilot with a grudge against the navy.")

    def test_empty_description_always_replaced(self):
        bare = self.node.model_copy(update={"description": None})
        self.assertEqual(merge_enrichment(bare, EnrichedNode(id="n1", description="Hi")).description, "Hi")

    def test_missing_keys_skip_filled_attributes(self):
        missing = missing_attribute_keys(self.node)
        self.assertNotIn("age", missing)
        self.assertIn("full_name", missing)


class TestParseEnrichment(unittest.TestCase):
    def test_json_inside_prose(self):
        response = parse_enrichment('Sure! {"enriched": [{"id": "n1", "attributes": {"age": "30"}}]} Done.')
        self.assertEqual(response.enriched[0].attributes, {"age": "30"})

    def test_failures(self):
        with self.assertRaises(GenerationError):
            parse_enrichment("no json here")
        with self.assertRaises(GenerationError):
            parse_enrichment("{not valid}")


class TestEnrichNodes(unittest.TestCase):
    def test_updates_known_nodes_and_reports_unknown(self):
        store = _make_store()
        project = Project(id="p1", user_id="u1", title="Saga", genre="Noir")
        store.save_project(project)
        node = StoryNode(id="n1", project_id="p1", node_type=NodeType.LOCATION, name="Docks")
        store.save_node(node)

        client = MagicMock()
        client.chat.return_value = LLMResult(
            text=json.dumps(
                {
                    "enriched": [
                        {"id": "n1", "description": "Fog and rust.", "attributes": {"climate": "damp"}},
                        {"id": "n9", "attributes": {}},
                    ]
                }
            ),
            model="gpt-4o",
        )
        provider = UserProvider(client=client, provider="openai", default_model_id="gpt-4o")

        outcomes, _ = enrich_nodes(store, provider, "gpt-4o", project, [node])
        self.assertEqual([(o.id, o.success) for o in outcomes], [("n1", True), ("n9", False)])
        self.assertEqual(outcomes[1].error, "Node not found")
        saved = store.get_node("n1")
        self.assertEqual(saved.description, "Fog and rust.")
        self.assertEqual(saved.attributes, {"climate": "damp"})

        system, prompt = build_enrichment_prompts(project, [node])
        self.assertIn("**Genre:** Noir", system)
        self.assertIn('"missingAttributes"', prompt)


if __name__ == "__main__":
    unittest.main()
