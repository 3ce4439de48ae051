from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class NodeType(str, Enum):
    CHARACTER = "character"
    LOCATION = "location"
    EVENT = "event"
    ITEM = "item"
    FACTION = "faction"
    CONCEPT = "concept"


class AIProvider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class TaskType(str, Enum):
    OUTLINE = "outline"
    SYNOPSIS = "synopsis"
    SCENE = "scene"
    EDIT = "edit"
    UNIVERSE = "universe"


class UsageStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class Profile(BaseModel):
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    stripe_customer_id: Optional[str] = None
    words_used_this_month: int = 0
    words_quota: Optional[int] = None
    billing_period_start: Optional[datetime] = None
    billing_period_end: Optional[datetime] = None
    ai_provider: Optional[str] = None
    ai_default_model: Optional[str] = None
    ai_keys: Dict[str, Optional[str]] = Field(default_factory=dict)
    ai_keys_valid: Dict[str, bool] = Field(default_factory=dict)
    ai_api_key_encrypted: Optional[str] = None
    ai_api_key_iv: Optional[str] = None
    ai_api_key_valid: bool = False
    task_models: Dict[str, Optional[str]] = Field(default_factory=dict)
    onboarding_completed_at: Optional[datetime] = None
    onboarding_current_step: Optional[str] = None
    onboarding_skipped_at: Optional[datetime] = None
    onboarding_banner_dismissed_at: Optional[datetime] = None
    onboarding_tooltips_dismissed: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Project(BaseModel):
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    genre: Optional[str] = None
    world_description: Optional[str] = None
    themes: List[str] = Field(default_factory=list)
    world_setting: Optional[str] = None
    time_period: Optional[str] = None
    series_type: Optional[str] = None
    target_audience: Optional[str] = None
    narrative_conventions: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Book(BaseModel):
    id: str
    project_id: str
    title: str
    subtitle: Optional[str] = None
    synopsis: Optional[str] = None
    sort_order: int = 0
    previously_on: Optional[str] = None
    pov_style: Optional[str] = None
    tense: Optional[str] = None
    prose_style: Optional[str] = None
    pacing: Optional[str] = None
    dialogue_style: Optional[str] = None
    tone: List[str] = Field(default_factory=list)
    content_rating: Optional[str] = None
    violence_level: Optional[str] = None
    romance_level: Optional[str] = None
    target_word_count: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Chapter(BaseModel):
    id: str
    book_id: str
    title: Optional[str] = None
    summary: Optional[str] = None
    order_index: int = 0
    sort_order: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Scene(BaseModel):
    id: str
    chapter_id: str
    title: Optional[str] = None
    beat_instructions: Optional[str] = None
    generated_prose: Optional[str] = None
    edited_prose: Optional[str] = None
    location_id: Optional[str] = None
    pov_character_id: Optional[str] = None
    time_in_story: Optional[str] = None
    mood: Optional[str] = None
    tension_level: Optional[str] = None
    order_index: int = 0
    sort_order: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def prose(self) -> Optional[str]:
        return self.edited_prose or self.generated_prose


class SceneCharacter(BaseModel):
    scene_id: str
    node_id: str
    pov: bool = False


class StoryNode(BaseModel):
    id: str
    project_id: str
    node_type: NodeType
    name: str
    description: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    character_role: Optional[str] = None
    character_arc: Optional[str] = None
    location_type: Optional[str] = None
    event_date: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    position_x: float = 0.0
    position_y: float = 0.0
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class StoryEdge(BaseModel):
    id: str
    project_id: str
    source_node_id: str
    target_node_id: str
    relationship_type: str = "related_to"
    label: Optional[str] = None
    description: Optional[str] = None
    weight: int = Field(default=5, ge=1, le=10)
    is_bidirectional: bool = False
    valid_from_book_id: Optional[str] = None
    valid_until_book_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class UsageRecord(BaseModel):
    id: str
    user_id: str
    project_id: Optional[str] = None
    book_id: Optional[str] = None
    scene_id: Optional[str] = None
    endpoint: str
    provider: Optional[str] = None
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    input_cost_cents: float = 0.0
    output_cost_cents: float = 0.0
    cache_savings_cents: float = 0.0
    total_cost_cents: float = 0.0
    request_duration_ms: Optional[int] = None
    status: UsageStatus = UsageStatus.SUCCESS
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


# ---------------------------------------------------------------------------
# Graph context (derived, never persisted)
# ---------------------------------------------------------------------------


class SubgraphRow(BaseModel):
    """One row of a bounded traversal: a reached node plus the edge that reached it."""

    node_id: str
    node_type: NodeType
    node_name: str
    node_description: Optional[str] = None
    node_attributes: Dict[str, Any] = Field(default_factory=dict)
    node_character_role: Optional[str] = None
    node_character_arc: Optional[str] = None
    node_location_type: Optional[str] = None
    node_event_date: Optional[str] = None
    node_tags: List[str] = Field(default_factory=list)
    edge_id: Optional[str] = None
    edge_source_id: Optional[str] = None
    edge_target_id: Optional[str] = None
    edge_type: Optional[str] = None
    edge_label: Optional[str] = None
    edge_description: Optional[str] = None
    edge_weight: Optional[int] = None
    edge_is_bidirectional: Optional[bool] = None
    valid_from_book_title: Optional[str] = None
    valid_until_book_title: Optional[str] = None
    connected_to: Optional[str] = None
    depth: int = 0


class ContextNode(BaseModel):
    id: str
    type: NodeType
    name: str
    description: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    character_role: Optional[str] = None
    character_arc: Optional[str] = None
    location_type: Optional[str] = None
    event_date: Optional[str] = None
    depth: int = 0
    is_pov: bool = False
    tags: List[str] = Field(default_factory=list)


class ContextRelationship(BaseModel):
    id: str
    source_id: str
    source_name: str
    source_type: NodeType
    target_id: str
    target_name: str
    target_type: NodeType
    relationship_type: str = "related_to"
    label: Optional[str] = None
    description: Optional[str] = None
    weight: int = 5
    is_bidirectional: bool = False
    valid_from_book_title: Optional[str] = None
    valid_until_book_title: Optional[str] = None


class SceneExcerpt(BaseModel):
    id: str
    title: Optional[str] = None
    excerpt: str
    chapter_title: str = "Unknown"
    order_index: int = 0
    is_current_chapter: bool = True


class ChapterSummary(BaseModel):
    id: str
    title: Optional[str] = None
    summary: str
    order_index: int = 0
    book_title: str = "Unknown"


class BookContext(BaseModel):
    id: str
    title: str
    synopsis: Optional[str] = None
    sort_order: int = 0
    is_current: bool = False
    previously_on: Optional[str] = None
    pov_style: Optional[str] = None
    tense: Optional[str] = None
    prose_style: Optional[str] = None
    pacing: Optional[str] = None
    dialogue_style: Optional[str] = None
    content_rating: Optional[str] = None
    violence_level: Optional[str] = None
    romance_level: Optional[str] = None
    tone: List[str] = Field(default_factory=list)


class EventContext(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    event_date: Optional[str] = None
    involved_character_names: List[str] = Field(default_factory=list)


class SceneMeta(BaseModel):
    id: str
    title: Optional[str] = None
    time_in_story: Optional[str] = None


class ProjectMeta(BaseModel):
    title: str = "Untitled Project"
    genre: Optional[str] = None
    world_description: Optional[str] = None
    themes: List[str] = Field(default_factory=list)
    world_setting: Optional[str] = None
    time_period: Optional[str] = None
    series_type: Optional[str] = None
    target_audience: Optional[str] = None
    narrative_conventions: List[str] = Field(default_factory=list)


class GraphContext(BaseModel):
    scene: Optional[SceneMeta] = None
    project: ProjectMeta = Field(default_factory=ProjectMeta)
    nodes: List[ContextNode] = Field(default_factory=list)
    relationships: List[ContextRelationship] = Field(default_factory=list)
    previous_scenes: List[SceneExcerpt] = Field(default_factory=list)
    chapter_summaries: List[ChapterSummary] = Field(default_factory=list)
    book_context: List[BookContext] = Field(default_factory=list)
    events: List[EventContext] = Field(default_factory=list)
    focus_node_ids: List[str] = Field(default_factory=list)
    pov_node_id: Optional[str] = None
    current_book_id: Optional[str] = None
    current_chapter_id: Optional[str] = None
    incomplete_sections: List[str] = Field(default_factory=list)
