from __future__ import annotations

from typing import Dict, List, Optional

from models import GraphContext, NodeType


EDIT_ACTIONS: Dict[str, Dict[str, str]] = {
    "shorten": {"label": "Shorten", "description": "Make text more concise", "category": "core"},
    "expand": {"label": "Expand", "description": "Add more detail and description", "category": "core"},
    "rewrite": {"label": "Re-Write", "description": "Rephrase while keeping meaning", "category": "core"},
    "show_dont_tell": {
        "label": "Show, Don't Tell",
        "description": "Convert telling to vivid showing",
        "category": "fiction",
    },
    "dialogue": {
        "label": "Add Dialogue",
        "description": "Insert or enhance character dialogue",
        "category": "fiction",
    },
    "intensify": {"label": "Intensify", "description": "Make more dramatic, raise stakes", "category": "fiction"},
    "soften": {"label": "Soften", "description": "Make lighter, reduce intensity", "category": "fiction"},
    "continue": {"label": "Continue", "description": "Write what comes next", "category": "utility"},
    "fix": {"label": "Fix Prose", "description": "Grammar, spelling, awkward phrasing", "category": "utility"},
    "custom": {"label": "Custom...", "description": "Enter specific instructions", "category": "utility"},
}

# Actions that may reference characters, locations or world details
CONTEXT_ACTIONS = ("expand", "dialogue", "continue", "show_dont_tell", "intensify", "custom")

EDIT_SYSTEM_PROMPT = (
    "You are a skilled fiction editor helping a novelist refine their prose. "
    "Your task is to edit the selected text according to the specific instruction given.\n\n"
    "Guidelines:\n"
    "- Maintain the author's voice and style\n"
    "- Keep the same point of view (POV) and tense\n"
    "- Preserve character names and important details\n"
    "- Output ONLY the edited text, no explanations or commentary\n"
    "- Match the approximate length of the original unless specifically asked to expand or shorten\n"
    "- Maintain consistent formatting (no markdown, just prose)"
)

_INSTRUCTIONS: Dict[str, tuple] = {
    "shorten": (
        "Make this text more concise while preserving its meaning and impact. "
        "Remove unnecessary words and tighten the prose.",
        "SHORTENED VERSION:",
    ),
    "expand": (
        "Expand this text with more sensory detail, description, and depth. "
        "Add richness without changing the core meaning.",
        "EXPANDED VERSION:",
    ),
    "rewrite": (
        "Rewrite this text with different phrasing while keeping the same meaning. "
        "Use fresh word choices and sentence structures.",
        "REWRITTEN VERSION:",
    ),
    "show_dont_tell": (
        'Transform this text from "telling" to "showing." Replace abstract statements with concrete '
        "actions, sensory details, and dialogue. Let readers experience the scene rather than being "
        "told about it.",
        "SHOWN VERSION:",
    ),
    "dialogue": (
        "Add or enhance dialogue in this passage. Give characters distinct voices and use dialogue "
        "to reveal character and advance the story.",
        "WITH ENHANCED DIALOGUE:",
    ),
    "intensify": (
        "Make this text more dramatic and intense. Raise the emotional stakes, heighten tension, "
        "and make the prose more gripping.",
        "INTENSIFIED VERSION:",
    ),
    "soften": (
        "Make this text lighter and less intense. Reduce dramatic tension while maintaining the core "
        "meaning. Create a more relaxed, gentle tone.",
        "SOFTENED VERSION:",
    ),
    "continue": (
        "Continue writing from where this text ends. Match the style, tone, and voice. "
        "Write the next natural paragraph or beat.",
        "CONTINUATION:",
    ),
    "fix": (
        "Fix any grammar, spelling, punctuation, or awkward phrasing in this text. "
        "Maintain the original meaning and style.",
        "CORRECTED VERSION:",
    ),
    "custom": ("{custom_prompt}", "EDITED VERSION:"),
}


def action_needs_context(action: str) -> bool:
    return action in CONTEXT_ACTIONS


def actions_by_category() -> Dict[str, List[str]]:
    categories: Dict[str, List[str]] = {"core": [], "fiction": [], "utility": []}
    for action, config in EDIT_ACTIONS.items():
        categories[config["category"]].append(action)
    return categories


def build_edit_prompt(action: str, text: str, custom_prompt: Optional[str] = None) -> str:
    instruction, answer_label = _INSTRUCTIONS[action]
    if action == "custom":
        instruction = custom_prompt or instruction
    return f"{instruction}\n\nTEXT:\n{text}\n\n{answer_label}"


def build_edit_system_prompt(context: Optional[GraphContext] = None) -> str:
    """Editor system prompt, optionally grounded in the scene's graph context."""
    if context is None:
        return EDIT_SYSTEM_PROMPT

    parts = [EDIT_SYSTEM_PROMPT]

    current_book = next((book for book in context.book_context if book.is_current), None)
    if current_book is not None:
        style_lines: List[str] = []
        if current_book.pov_style:
            style_lines.append(f"- POV: {current_book.pov_style}")
        if current_book.tense:
            style_lines.append(f"- Tense: {current_book.tense}")
        if current_book.prose_style:
            style_lines.append(f"- Prose Style: {current_book.prose_style}")
        if current_book.pacing:
            style_lines.append(f"- Pacing: {current_book.pacing}")
        if current_book.dialogue_style:
            style_lines.append(f"- Dialogue Style: {current_book.dialogue_style}")
        if current_book.tone:
            style_lines.append(f"- Tone: {', '.join(current_book.tone)}")
        if style_lines:
            parts.append(
                "\n## Book Style Guidelines\nMatch these writing conventions:\n" + "\n".join(style_lines)
            )

    project = context.project
    if project.genre or project.world_setting:
        world_lines: List[str] = []
        if project.genre:
            world_lines.append(f"- Genre: {project.genre}")
        if project.world_setting:
            world_lines.append(f"- Setting: {project.world_setting}")
        if project.time_period:
            world_lines.append(f"- Time Period: {project.time_period}")
        parts.append("\n## World Context\n" + "\n".join(world_lines))

    characters = [node for node in context.nodes if node.type == NodeType.CHARACTER]
    if characters:
        char_lines: List[str] = []
        pov = next((node for node in characters if node.is_pov), None)
        if pov is not None:
            line = f"- **{pov.name}** (POV character)"
            if pov.description:
                line += f": {pov.description}"
            char_lines.append(line)
        for node in characters:
            if node.is_pov:
                continue
            line = f"- **{node.name}**"
            if node.character_role:
                line += f" ({node.character_role})"
            if node.description:
                line += f": {node.description}"
            char_lines.append(line)
        parts.append("\n## Characters in Scene\n" + "\n".join(char_lines))

    between_characters = [
        rel
        for rel in context.relationships
        if rel.source_type == NodeType.CHARACTER and rel.target_type == NodeType.CHARACTER
    ]
    if between_characters:
        rel_lines = []
        for rel in between_characters[:5]:
            line = f"- {rel.source_name} → {rel.target_name}: {rel.relationship_type}"
            if rel.label:
                line += f" ({rel.label})"
            rel_lines.append(line)
        parts.append("\n## Character Relationships\n" + "\n".join(rel_lines))

    locations = [node for node in context.nodes if node.type == NodeType.LOCATION]
    if locations:
        location = locations[0]
        line = f"- **{location.name}**"
        if location.location_type:
            line += f" ({location.location_type})"
        if location.description:
            line += f": {location.description}"
        parts.append("\n## Current Location\n" + line)

    return "\n".join(parts)
