"""Fill in missing type-specific attributes on existing story nodes."""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from core.llm_client import LLMResult
from core.story_schema import NODE_ATTRIBUTE_KEYS
from models import Project, StoryNode
from services.provider_resolution import UserProvider
from services.story_generation import GenerationError, format_project_brief
from storage import StoryStore

logger = logging.getLogger("novelworld.enrichment")

ENRICH_MAX_TOKENS = 8000

_JSON_SPAN_RE = re.compile(r"\{[\s\S]*\}")

ENRICH_SYSTEM_TEMPLATE = """You are a creative fiction writer enriching story universe elements with detailed attributes.

{project}

## Task
For each node provided, generate rich, creative details that fit the story's genre and setting.
Fill in missing attributes while maintaining consistency with existing data.

## Attribute Types
- Text fields: Single values (strings)
- Tags/arrays: Multiple related items (arrays of strings)
- Textarea: Longer descriptions
- Boolean: true/false values

## Guidelines
- Be creative but consistent with the established setting
- Make characters feel real with flaws and complexity
- Give locations sensory details and atmosphere
- Make items and factions distinctive
- Connect elements to the broader story world
- Maintain internal consistency

Respond with valid JSON only, no markdown or explanation."""


class EnrichedNode(BaseModel):
    id: str
    description: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class EnrichmentResponse(BaseModel):
    enriched: List[EnrichedNode] = Field(default_factory=list)


class EnrichmentOutcome(BaseModel):
    id: str
    name: str
    success: bool
    error: Optional[str] = None


def missing_attribute_keys(node: StoryNode) -> List[str]:
    existing = node.attributes or {}
    return [key for key in NODE_ATTRIBUTE_KEYS.get(node.node_type.value, []) if not existing.get(key)]


def build_enrichment_prompts(project: Project, nodes: List[StoryNode]) -> Tuple[str, str]:
    descriptions = [
        {
            "id": node.id,
            "name": node.name,
            "type": node.node_type.value,
            "description": node.description,
            "role": node.character_role,
            "existingAttributes": node.attributes or {},
            "missingAttributes": missing_attribute_keys(node),
        }
        for node in nodes
    ]
    system = ENRICH_SYSTEM_TEMPLATE.format(project=format_project_brief(project))
    prompt = f"""Enrich these {len(nodes)} story elements with detailed attributes.

Current nodes to enrich:
{json.dumps(descriptions, indent=2, ensure_ascii=False)}

For each node, generate:
1. An enhanced description (if the current one is brief)
2. All missing attributes appropriate for the node type

Response format (JSON only):
{{
  "enriched": [
    {{
      "id": "node-uuid",
      "description": "Enhanced description (optional, only if improving)",
      "attributes": {{
        "attribute_key": "value or [array of values]",
        ...
      }}
    }}
  ]
}}"""
    return system, prompt


def parse_enrichment(text: str) -> EnrichmentResponse:
    match = _JSON_SPAN_RE.search(text or "")
    if not match:
        raise GenerationError("No JSON found in response")
    try:
        return EnrichmentResponse.model_validate(json.loads(match.group(0)))
    except (ValueError, ValidationError) as exc:
        raise GenerationError(f"Failed to parse AI response: {exc}") from exc


def merge_enrichment(node: StoryNode, enriched: EnrichedNode) -> StoryNode:
    """Shallow-merge attributes (new values win); replace the description only
    when the old one is empty or the new one is longer."""
    merged = node.model_copy(deep=True)
    merged.attributes = {**(node.attributes or {}), **enriched.attributes}
    if enriched.description and (not node.description or len(enriched.description) > len(node.description)):
        merged.description = enriched.description
    return merged


def enrich_nodes(
    store: StoryStore,
    provider: UserProvider,
    model: str,
    project: Project,
    nodes: List[StoryNode],
) -> Tuple[List[EnrichmentOutcome], LLMResult]:
    system, prompt = build_enrichment_prompts(project, nodes)
    result = provider.client.chat(
        [{"role": "user", "content": prompt}],
        system=system,
        model=model,
        max_tokens=ENRICH_MAX_TOKENS,
    )
    try:
        response = parse_enrichment(result.text)
    except GenerationError:
        logger.warning("enrichment parse failed project_id=%s raw=%s", project.id, result.text[:500])
        raise

    by_id = {node.id: node for node in nodes}
    outcomes: List[EnrichmentOutcome] = []
    for enriched in response.enriched:
        original = by_id.get(enriched.id)
        if original is None:
            outcomes.append(EnrichmentOutcome(id=enriched.id, name="Unknown", success=False, error="Node not found"))
            continue
        store.save_node(merge_enrichment(original, enriched))
        outcomes.append(EnrichmentOutcome(id=original.id, name=original.name, success=True))

    logger.info(
        "nodes enriched project_id=%s updated=%d total=%d",
        project.id,
        sum(1 for outcome in outcomes if outcome.success),
        len(nodes),
    )
    return outcomes, result
