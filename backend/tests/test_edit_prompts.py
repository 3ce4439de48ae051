import unittest

from core.edit_prompts import (
    EDIT_ACTIONS,
    EDIT_SYSTEM_PROMPT,
    action_needs_context,
    actions_by_category,
    build_edit_prompt,
    build_edit_system_prompt,
)
from models import BookContext, ContextNode, GraphContext, NodeType, ProjectMeta


class TestEditActions(unittest.TestCase):
    def test_catalogue(self):
        self.assertEqual(len(EDIT_ACTIONS), 10)
        categories = actions_by_category()
        self.assertEqual(categories["core"], ["shorten", "expand", "rewrite"])
        self.assertIn("custom", categories["utility"])
        self.assertEqual(sum(len(actions) for actions in categories.values()), 10)

    def test_context_actions(self):
        self.assertTrue(action_needs_context("dialogue"))
        self.assertTrue(action_needs_context("custom"))
        self.assertFalse(action_needs_context("fix"))
        self.assertFalse(action_needs_context("shorten"))

    def test_prompt_layout(self):
        prompt = build_edit_prompt("shorten", "She walked slowly.")
        self.assertTrue(prompt.startswith("Make this text more concise"))
        self.assertIn("\n\nTEXT:\nShe walked slowly.\n\n", prompt)
        self.assertTrue(prompt.endswith("SHORTENED VERSION:"))

    def test_custom_prompt_replaces_instruction(self):
        prompt = build_edit_prompt("custom", "Rain fell.", custom_prompt="Make it rhyme")
        self.assertTrue(prompt.startswith("Make it rhyme\n\nTEXT:\nRain fell."))
        self.assertTrue(prompt.endswith("EDITED VERSION:"))


class TestEditSystemPrompt(unittest.TestCase):
    def test_without_context(self):
        self.assertEqual(build_edit_system_prompt(None), EDIT_SYSTEM_PROMPT)

    def test_style_world_and_cast_sections(self):
        context = GraphContext(
            project=ProjectMeta(title="Saga", genre="Fantasy", world_setting="Islands"),
            book_context=[
                BookContext(id="b1", title="One", sort_order=0, is_current=True, tense="past", tone=["grim"])
            ],
            nodes=[
                ContextNode(id="n2", type=NodeType.CHARACTER, name="Bob", character_role="rival"),
                ContextNode(id="n1", type=NodeType.CHARACTER, name="Alice", description="A pilot", is_pov=True),
            ],
        )
        prompt = build_edit_system_prompt(context)
        self.assertTrue(prompt.startswith(EDIT_SYSTEM_PROMPT))
        self.assertIn("- Tense: past", prompt)
        self.assertIn("- Tone: grim", prompt)
        self.assertIn("## World Context\n- Genre: Fantasy\n- Setting: Islands", prompt)
        self.assertIn(
            "## Characters in Scene\n- **Alice** (POV character): A pilot\n- **Bob** (rival)",
            prompt,
        )
        self.assertNotIn("## Current Location", prompt)


if __name__ == "__main__":
    unittest.main()
