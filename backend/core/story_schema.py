from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, List


CHARACTER_ROLES: List[Dict[str, str]] = [
    {"value": "protagonist", "label": "Protagonist", "description": "Main character driving the story"},
    {"value": "antagonist", "label": "Antagonist", "description": "Primary opposition"},
    {"value": "deuteragonist", "label": "Deuteragonist", "description": "Secondary protagonist"},
    {"value": "love_interest", "label": "Love Interest", "description": "Romantic interest"},
    {"value": "mentor", "label": "Mentor", "description": "Guide/teacher figure"},
    {"value": "ally", "label": "Ally", "description": "Supporting character"},
    {"value": "rival", "label": "Rival", "description": "Competition (not evil)"},
    {"value": "foil", "label": "Foil", "description": "Contrasts protagonist"},
    {"value": "confidant", "label": "Confidant", "description": "Trusted friend"},
    {"value": "comic_relief", "label": "Comic Relief", "description": "Provides humor"},
    {"value": "supporting", "label": "Supporting", "description": "Named recurring character"},
    {"value": "minor", "label": "Minor", "description": "Small role"},
]

# (value, bidirectional) per node-type pair
_RELATIONSHIP_TYPES: Dict[str, List[tuple]] = {
    "character-character": [
        ("parent_of", False), ("child_of", False), ("sibling_of", True), ("spouse_of", True),
        ("ancestor_of", False), ("loves", False), ("dating", True), ("ex_partner_of", True),
        ("friend_of", True), ("enemy_of", True), ("rival_of", True), ("respects", False),
        ("fears", False), ("trusts", False), ("distrusts", False), ("mentor_of", False),
        ("student_of", False), ("employer_of", False), ("colleague_of", True), ("saved_by", False),
        ("betrayed_by", False), ("allied_with", True), ("bound_to", True),
    ],
    "character-location": [
        ("lives_in", False), ("works_at", False), ("born_in", False), ("owns", False),
        ("rules", False), ("frequents", False), ("banished_from", False), ("hiding_in", False),
    ],
    "character-faction": [
        ("member_of", False), ("leader_of", False), ("founded", False), ("left", False),
        ("exiled_from", False), ("spy_in", False), ("serves", False),
    ],
    "character-item": [
        ("owns", False), ("wields", False), ("created", False), ("seeks", False),
        ("guards", False), ("bound_to", False), ("cursed_by", False),
    ],
    "character-event": [
        ("participated_in", False), ("caused", False), ("witnessed", False),
        ("died_in", False), ("survived", False),
    ],
    "location-location": [
        ("contains", False), ("part_of", False), ("adjacent_to", True),
        ("connected_to", True), ("leads_to", False),
    ],
    "faction-faction": [
        ("allied_with", True), ("at_war_with", True), ("rival_of", True),
        ("vassal_of", False), ("trades_with", True),
    ],
    "general": [("related_to", True), ("associated_with", True), ("affects", False)],
}


def _all_relationship_values() -> List[str]:
    seen: List[str] = []
    for entries in _RELATIONSHIP_TYPES.values():
        for value, _ in entries:
            if value not in seen:
                seen.append(value)
    return seen


RELATIONSHIP_TYPE_VALUES: List[str] = _all_relationship_values()
DEFAULT_RELATIONSHIP_TYPE = "related_to"

NODE_ATTRIBUTE_KEYS: Dict[str, List[str]] = {
    "character": [
        "full_name", "aliases", "age", "date_of_birth", "gender", "pronouns", "species", "occupation",
        "height", "build", "hair_color", "hair_style", "eye_color", "skin_tone", "distinguishing_features",
        "voice", "personality_traits", "strengths", "flaws", "fears", "desires", "values", "quirks",
        "speech_patterns", "backstory", "secrets", "skills",
        "motivation", "internal_conflict", "external_conflict", "arc_summary",
    ],
    "location": [
        "location_subtype", "climate", "terrain", "atmosphere", "sounds", "smells", "population",
        "government", "economy", "culture", "architecture", "dangers", "resources", "history", "secrets",
    ],
    "event": [
        "event_type", "start_date", "end_date", "duration", "location_name", "participants",
        "outcome", "consequences", "causes", "public_knowledge", "historical_significance",
    ],
    "item": [
        "item_type", "material", "size", "color", "condition", "origin", "creator", "age",
        "previous_owners", "current_owner", "powers", "value", "rarity", "history",
    ],
    "faction": [
        "faction_type", "founding_date", "founder", "headquarters", "size", "leadership", "ranks",
        "goals", "methods", "ideology", "symbols", "motto", "allies", "enemies", "reputation", "secrets",
    ],
    "concept": [
        "concept_type", "origin", "practitioners", "rules", "limitations", "manifestations",
        "history", "public_knowledge", "symbols", "examples",
    ],
}

POV_LABELS: Dict[str, str] = {
    "first_person": "First Person (I/me)",
    "third_limited": "Third Person Limited",
    "third_omniscient": "Third Person Omniscient",
    "second_person": "Second Person (you)",
    "multiple_pov": "Multiple POV",
}

PROSE_STYLE_LABELS: Dict[str, str] = {
    "literary": "Literary (rich, layered prose)",
    "commercial": "Commercial (accessible, engaging)",
    "sparse": "Sparse/Minimalist (Hemingway-style)",
    "ornate": "Ornate (detailed, descriptive)",
    "conversational": "Conversational (informal, natural)",
}

PACING_LABELS: Dict[str, str] = {
    "fast": "Fast-paced (action-driven)",
    "moderate": "Moderate (balanced)",
    "slow": "Slow/deliberate (character-focused)",
    "variable": "Variable (scene-dependent)",
}

CONTENT_RATING_LABELS: Dict[str, str] = {
    "all_ages": "All Ages (G)",
    "teen": "Teen (PG-13)",
    "mature": "Mature (R)",
    "adult": "Adult (18+)",
}

VIOLENCE_LABELS: Dict[str, str] = {
    "none": "None",
    "mild": "Mild (implied, off-screen)",
    "moderate": "Moderate (some action/combat)",
    "graphic": "Graphic (detailed violence)",
}

ROMANCE_LABELS: Dict[str, str] = {
    "none": "None",
    "sweet": "Sweet/Clean (fade to black)",
    "sensual": "Sensual (suggestive)",
    "steamy": "Steamy (explicit)",
}

TONE_OPTIONS: List[str] = [
    "dark", "hopeful", "comedic", "tragic", "epic", "intimate",
    "suspenseful", "whimsical", "gritty", "romantic", "mysterious", "adventurous",
]

TARGET_AUDIENCES: List[str] = ["middle_grade", "young_adult", "new_adult", "adult"]
SERIES_TYPES: List[str] = ["standalone", "duology", "trilogy", "series", "open_ended"]

SCENE_MOODS: List[str] = [
    "tense", "romantic", "mysterious", "humorous", "melancholic",
    "hopeful", "dramatic", "peaceful", "action", "suspenseful",
]
TENSION_LEVELS: List[str] = ["low", "medium", "high", "peak"]


def label_for(labels: Dict[str, str], value: str) -> str:
    """Human label for a stored option; unknown values pass through."""
    return labels.get(value, value)


def is_relationship_type(value: str) -> bool:
    return value in RELATIONSHIP_TYPE_VALUES


def relationship_types_for_pair(source_type: str, target_type: str) -> List[Dict[str, Any]]:
    keys = [f"{source_type}-{target_type}", f"{target_type}-{source_type}", "general"]
    seen = set()
    items: List[Dict[str, Any]] = []
    for key in keys:
        for value, bidirectional in _RELATIONSHIP_TYPES.get(key, []):
            if value in seen:
                continue
            seen.add(value)
            items.append({"value": value, "bidirectional": bidirectional})
    return items


def describe_schema() -> Dict[str, Any]:
    return deepcopy(
        {
            "node_types": list(NODE_ATTRIBUTE_KEYS),
            "node_attribute_keys": NODE_ATTRIBUTE_KEYS,
            "character_roles": CHARACTER_ROLES,
            "relationship_types": RELATIONSHIP_TYPE_VALUES,
            "pov_styles": POV_LABELS,
            "tenses": ["past", "present"],
            "prose_styles": PROSE_STYLE_LABELS,
            "pacing": PACING_LABELS,
            "content_ratings": CONTENT_RATING_LABELS,
            "violence_levels": VIOLENCE_LABELS,
            "romance_levels": ROMANCE_LABELS,
            "tones": TONE_OPTIONS,
            "target_audiences": TARGET_AUDIENCES,
            "series_types": SERIES_TYPES,
        }
    )
