import asyncio
import logging
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

import stripe
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.edit_prompts import EDIT_ACTIONS, action_needs_context, build_edit_prompt, build_edit_system_prompt
from core.key_encryption import (
    KeyDecryptionError,
    KeyEncryptionError,
    decrypt_api_key_embedded,
    encrypt_api_key,
    encrypt_api_key_embedded,
    mask_api_key,
)
from core.llm_client import LLMError, LLMResult, LLMUsage, SystemPrompt
from core.provider_config import (
    PROVIDER_IDS,
    get_all_models,
    get_default_model,
    get_display_name,
    get_provider_for_model,
    is_valid_model,
    is_valid_provider,
    list_provider_configs,
    validate_api_key_format,
)
from core.story_schema import describe_schema, is_relationship_type
from models import (
    Book,
    Chapter,
    NodeType,
    Project,
    Scene,
    SceneCharacter,
    StoryEdge,
    StoryNode,
    TaskType,
    UsageStatus,
)
from services.billing import BillingError, BillingService, WebhookSignatureError
from services.context_formatter import (
    build_cacheable_system_prompt,
    build_scene_system_blocks,
    format_context_for_prompt,
)
from services.graph_context import GraphContextBuilder
from services.manuscript_export import export_book_text
from services.node_enrichment import enrich_nodes
from services.provider_resolution import (
    ProviderError,
    UserProvider,
    configured_providers,
    get_user_provider,
    verify_api_key_remote,
)
from services.story_generation import (
    GenerationError,
    UniverseOptions,
    generate_outline,
    generate_recap,
    generate_synopsis,
    generate_universe,
    insert_universe,
    previous_books_for,
)
from services.subscription import (
    LimitCheckResult,
    check_book_limit,
    check_node_limit,
    check_project_limit,
    check_word_quota,
    get_usage_stats,
    increment_word_usage,
)
from services.usage_tracker import get_user_usage_summary, track_ai_usage
from storage import StoryStore
from utils.text_cleaner import count_words, sanitize_text

BACKEND_ROOT = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    data_dir: str = "../data"
    db_filename: str = "novelworld.db"

    api_key_encryption_secret: Optional[str] = None
    verify_api_keys_remotely: bool = True
    key_probe_timeout_seconds: float = 10.0

    scene_context_depth: int = 2
    edit_context_depth: int = 1
    scene_max_tokens: int = 4096
    edit_max_tokens: int = 4096

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_pro_monthly_price_id: Optional[str] = None
    stripe_pro_annual_price_id: Optional[str] = None
    app_url: str = "http://localhost:3000"

    log_level: str = "INFO"
    enable_http_logging: bool = True
    log_file: Optional[str] = None
    cors_origins: List[str] = ["*"]

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=str(BACKEND_ROOT / ".env"),
        env_file_encoding="utf-8",
    )


settings = Settings()
app = FastAPI(title="NovelWorld API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("novelworld.api")
if settings.log_file:
    log_path = Path(settings.log_file).expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    if not any(
        isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == str(log_path)
        for handler in logger.handlers
    ):
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
        file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        logger.addHandler(file_handler)
        logger.info("file logging enabled path=%s", log_path)

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}
STREAM_STOP_TIMEOUT_SECONDS = 5.0

# finishers that must outlive a cancelled response task
_stream_finishers: Set["asyncio.Future[None]"] = set()

QUOTA_EXCEEDED_MESSAGE = "You've reached your monthly AI generation limit. Upgrade to Pro for more words."

_store: Optional[StoryStore] = None


@app.middleware("http")
async def http_access_log_middleware(request: Request, call_next):
    if not settings.enable_http_logging:
        return await call_next(request)

    request_id = uuid4().hex[:8]
    started = time.perf_counter()
    logger.info(
        "REQ start id=%s method=%s path=%s query=%s",
        request_id,
        request.method,
        request.url.path,
        request.url.query or "-",
    )
    try:
        response = await call_next(request)
    except Exception:
        elapsed = (time.perf_counter() - started) * 1000
        logger.exception("REQ failed id=%s duration_ms=%.2f", request_id, elapsed)
        raise

    elapsed = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "REQ end id=%s status=%s duration_ms=%.2f",
        request_id,
        response.status_code,
        elapsed,
    )
    return response


def data_root() -> Path:
    configured = Path(settings.data_dir)
    if configured.is_absolute():
        root = configured.resolve()
    else:
        root = (BACKEND_ROOT / configured).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def get_store() -> StoryStore:
    global _store
    if _store is None:
        db_path = data_root() / settings.db_filename
        _store = StoryStore(str(db_path))
        logger.info("story store initialized db=%s", db_path)
    return _store


def billing_service() -> BillingService:
    return BillingService(
        get_store(),
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        monthly_price_id=settings.stripe_pro_monthly_price_id,
        annual_price_id=settings.stripe_pro_annual_price_id,
        app_url=settings.app_url,
    )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ApiError(Exception):
    """An error answered with a JSON body other than FastAPI's ``{"detail": ...}``."""

    def __init__(self, status_code: int, payload: Dict[str, Any]):
        super().__init__(payload.get("message") or payload.get("error"))
        self.status_code = status_code
        self.payload = payload


def bad_request(message: str) -> ApiError:
    return ApiError(400, {"error": message})


def first_validation_message(errors: List[Dict[str, Any]]) -> str:
    if not errors:
        return "Invalid request"
    error = errors[0]
    loc = [str(part) for part in error.get("loc", ()) if part != "body"]
    field = loc[-1] if loc else "body"
    error_type = error.get("type", "")
    if error_type == "value_error":
        ctx_error = (error.get("ctx") or {}).get("error")
        return str(ctx_error) if ctx_error is not None else error.get("msg", "Invalid value")
    if error_type == "missing":
        return f"{field} is required"
    if error_type == "json_invalid":
        return "Invalid JSON body"
    return f"{field}: {error.get('msg', 'Invalid value')}"


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=exc.payload)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    message = first_validation_message(exc.errors())
    logger.info("request rejected path=%s error=%s", request.url.path, message)
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.warning("provider error path=%s code=%s provider=%s", request.url.path, exc.code, exc.provider)
    return JSONResponse(status_code=400, content=exc.to_payload())


@app.exception_handler(LLMError)
@app.exception_handler(GenerationError)
async def generation_error_handler(request: Request, exc: Exception):
    logger.error("generation failed path=%s error=%s", request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "generation_error", "message": str(exc)})


@app.exception_handler(WebhookSignatureError)
async def webhook_signature_error_handler(request: Request, exc: WebhookSignatureError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    logger.error("billing failed path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


# ---------------------------------------------------------------------------
# Identity, ownership, plan limits
# ---------------------------------------------------------------------------


def current_user(request: Request) -> str:
    """The upstream auth gateway sets ``X-User-Id``; a profile row is created on first sight."""
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise ApiError(401, {"error": "Unauthorized"})
    get_store().ensure_profile(user_id, request.headers.get("X-User-Email"))
    return user_id


def owned_project(store: StoryStore, user_id: str, project_id: str) -> Project:
    project = store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    if project.user_id != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return project


def owned_book(store: StoryStore, user_id: str, book_id: str) -> Tuple[Book, Project]:
    book = store.get_book(book_id)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found")
    return book, owned_project(store, user_id, book.project_id)


def owned_chapter(store: StoryStore, user_id: str, chapter_id: str) -> Tuple[Chapter, Book, Project]:
    chapter = store.get_chapter(chapter_id)
    if chapter is None:
        raise HTTPException(status_code=404, detail="Chapter not found")
    book, project = owned_book(store, user_id, chapter.book_id)
    return chapter, book, project


def owned_scene(store: StoryStore, user_id: str, scene_id: str) -> Tuple[Scene, Chapter, Book, Project]:
    located = store.find_project_for_scene(scene_id)
    if located is None:
        raise HTTPException(status_code=404, detail="Scene not found")
    if located[3].user_id != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return located


def owned_node(store: StoryStore, user_id: str, node_id: str) -> Tuple[StoryNode, Project]:
    node = store.get_node(node_id)
    if node is None:
        raise HTTPException(status_code=404, detail="Story node not found")
    return node, owned_project(store, user_id, node.project_id)


def ensure_within_limit(result: LimitCheckResult) -> None:
    if not result.allowed:
        raise ApiError(
            403,
            {
                "error": "limit_exceeded",
                "message": result.message,
                "current": result.current,
                "limit": result.limit,
            },
        )


def ensure_word_quota(store: StoryStore, user_id: str) -> None:
    quota = check_word_quota(store, user_id)
    if not quota.allowed:
        logger.info("word quota exceeded user_id=%s used=%d limit=%d", user_id, quota.used, quota.limit)
        raise ApiError(
            429,
            {
                "error": "quota_exceeded",
                "message": QUOTA_EXCEEDED_MESSAGE,
                "used": quota.used,
                "limit": quota.limit,
                "tier": quota.tier.value,
            },
        )


def resolve_provider(store: StoryStore, user_id: str, model: Optional[str], task: TaskType) -> UserProvider:
    return get_user_provider(
        store,
        user_id,
        settings.api_key_encryption_secret,
        requested_model=model,
        task=task.value,
    )


def touched(record: BaseModel, changes: Dict[str, Any]) -> Any:
    return record.model_copy(update={**changes, "updated_at": datetime.now()})


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


def _required_text(value: Optional[str], label: str, max_length: int) -> str:
    value = sanitize_text(value)
    if not value:
        raise ValueError(f"{label} is required")
    if len(value) > max_length:
        raise ValueError(f"{label} must be {max_length} characters or less")
    return value


def _optional_text(value: Optional[str], label: str, max_length: int) -> Optional[str]:
    value = sanitize_text(value)
    if value and len(value) > max_length:
        raise ValueError(f"{label} must be {max_length} characters or less")
    return value or None


class ProjectFields(BaseModel):
    description: Optional[str] = None
    genre: Optional[str] = None
    world_description: Optional[str] = None
    themes: Optional[List[str]] = None
    world_setting: Optional[str] = None
    time_period: Optional[str] = None
    series_type: Optional[str] = None
    target_audience: Optional[str] = None
    narrative_conventions: Optional[List[str]] = None

    @field_validator("description")
    @classmethod
    def _description(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Description", 5000)

    @field_validator("genre")
    @classmethod
    def _genre(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Genre", 50)

    @field_validator("world_description", "world_setting", "time_period")
    @classmethod
    def _world(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "World details", 10000)


class ProjectCreateRequest(ProjectFields):
    title: str

    @field_validator("title")
    @classmethod
    def _title(cls, value: str) -> str:
        return _required_text(value, "Title", 200)


class ProjectUpdateRequest(ProjectFields):
    title: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _title(cls, value: Optional[str]) -> str:
        return _required_text(value, "Title", 200)


class BookFields(BaseModel):
    subtitle: Optional[str] = None
    synopsis: Optional[str] = None
    sort_order: Optional[int] = None
    previously_on: Optional[str] = None
    pov_style: Optional[str] = None
    tense: Optional[str] = None
    prose_style: Optional[str] = None
    pacing: Optional[str] = None
    dialogue_style: Optional[str] = None
    tone: Optional[List[str]] = None
    content_rating: Optional[str] = None
    violence_level: Optional[str] = None
    romance_level: Optional[str] = None
    target_word_count: Optional[int] = Field(default=None, ge=0)

    @field_validator("subtitle")
    @classmethod
    def _subtitle(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Subtitle", 200)

    @field_validator("synopsis", "previously_on")
    @classmethod
    def _long_text(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Synopsis", 10000)


class BookCreateRequest(BookFields):
    project_id: str
    title: str

    @field_validator("title")
    @classmethod
    def _title(cls, value: str) -> str:
        return _required_text(value, "Title", 200)


class BookUpdateRequest(BookFields):
    title: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _title(cls, value: Optional[str]) -> str:
        return _required_text(value, "Title", 200)


class ChapterRequest(BaseModel):
    title: Optional[str] = None
    summary: Optional[str] = None
    order_index: Optional[int] = None
    sort_order: Optional[int] = None

    @field_validator("title")
    @classmethod
    def _title(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Title", 200)

    @field_validator("summary")
    @classmethod
    def _summary(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Summary", 5000)


class SceneRequest(BaseModel):
    title: Optional[str] = None
    beat_instructions: Optional[str] = None
    generated_prose: Optional[str] = None
    edited_prose: Optional[str] = None
    location_id: Optional[str] = None
    pov_character_id: Optional[str] = None
    time_in_story: Optional[str] = None
    mood: Optional[str] = None
    tension_level: Optional[str] = None
    order_index: Optional[int] = None
    sort_order: Optional[int] = None

    @field_validator("title")
    @classmethod
    def _title(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Title", 200)

    @field_validator("beat_instructions")
    @classmethod
    def _beats(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Beat instructions", 10000)


class SceneCharacterLink(BaseModel):
    node_id: str
    pov: bool = False


class SceneCharactersRequest(BaseModel):
    characters: List[SceneCharacterLink] = Field(default_factory=list)


class NodeFields(BaseModel):
    description: Optional[str] = None
    attributes: Optional[Dict[str, Any]] = None
    character_role: Optional[str] = None
    character_arc: Optional[str] = None
    location_type: Optional[str] = None
    event_date: Optional[str] = None
    tags: Optional[List[str]] = None
    position_x: Optional[float] = None
    position_y: Optional[float] = None

    @field_validator("description")
    @classmethod
    def _description(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Description", 5000)


class NodeCreateRequest(NodeFields):
    project_id: str
    node_type: NodeType
    name: str

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        return _required_text(value, "Name", 100)


class NodeUpdateRequest(NodeFields):
    name: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _name(cls, value: Optional[str]) -> str:
        return _required_text(value, "Name", 100)


class EdgeCreateRequest(BaseModel):
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

    @field_validator("relationship_type")
    @classmethod
    def _relationship_type(cls, value: str) -> str:
        if not is_relationship_type(value):
            raise ValueError("Invalid relationship type")
        return value

    @field_validator("label")
    @classmethod
    def _label(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Label", 100)

    @field_validator("description")
    @classmethod
    def _description(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Description", 5000)


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class GenerateSceneRequest(CamelModel):
    scene_id: str = Field(alias="sceneId")
    prompt: str
    model: Optional[str] = None

    @field_validator("prompt")
    @classmethod
    def _prompt(cls, value: str) -> str:
        return _required_text(value, "Prompt", 10000)


class EditProseRequest(CamelModel):
    selected_text: str = Field(alias="selectedText")
    action: str
    custom_prompt: Optional[str] = Field(default=None, alias="customPrompt")
    scene_id: Optional[str] = Field(default=None, alias="sceneId")
    context: Optional[str] = None
    model: Optional[str] = None

    @field_validator("selected_text")
    @classmethod
    def _selected_text(cls, value: str) -> str:
        return _required_text(value, "Selected text", 50000)

    @field_validator("action")
    @classmethod
    def _action(cls, value: str) -> str:
        if value not in EDIT_ACTIONS:
            raise ValueError("Invalid action")
        return value

    @field_validator("custom_prompt")
    @classmethod
    def _custom_prompt(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Custom prompt", 2000)

    @field_validator("context")
    @classmethod
    def _context(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Context", 50000)


class GenerateOutlineRequest(CamelModel):
    book_id: str = Field(alias="bookId")
    chapter_count: Optional[int] = Field(default=None, ge=1, le=100, alias="chapterCount")
    scenes_per_chapter: Optional[int] = Field(default=None, ge=1, le=20, alias="scenesPerChapter")
    additional_instructions: Optional[str] = Field(default=None, alias="additionalInstructions")
    model: Optional[str] = None

    @field_validator("additional_instructions")
    @classmethod
    def _instructions(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Additional instructions", 5000)


class BookGenerationRequest(CamelModel):
    book_id: str = Field(alias="bookId")
    model: Optional[str] = None


class GenerateRecapRequest(BookGenerationRequest):
    save: bool = False


class GenerateUniverseRequest(CamelModel):
    project_id: str = Field(alias="projectId")
    prompt: Optional[str] = None
    options: UniverseOptions = Field(default_factory=UniverseOptions)
    model: Optional[str] = None

    @field_validator("prompt")
    @classmethod
    def _prompt(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value, "Prompt", 10000)


class EnrichNodesRequest(CamelModel):
    project_id: str = Field(alias="projectId")
    node_ids: List[str] = Field(alias="nodeIds")
    model: Optional[str] = None

    @field_validator("node_ids")
    @classmethod
    def _node_ids(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("At least one node is required")
        if len(value) > 20:
            raise ValueError("Enrich at most 20 nodes at a time")
        return value


class ApiKeyRequest(CamelModel):
    provider: str
    api_key: str = Field(alias="apiKey")

    @field_validator("api_key")
    @classmethod
    def _api_key(cls, value: str) -> str:
        value = sanitize_text(value) or ""
        if len(value) < 10:
            raise ValueError("API key is too short")
        if len(value) > 500:
            raise ValueError("API key is too long")
        return value


class ProviderSettingsRequest(CamelModel):
    provider: Optional[str] = None
    default_model: Optional[str] = Field(default=None, alias="defaultModel")
    task_models: Optional[Dict[str, Optional[str]]] = Field(default=None, alias="taskModels")


class CheckoutRequest(CamelModel):
    billing_cycle: str = Field(default="monthly", alias="billingCycle")

    @field_validator("billing_cycle")
    @classmethod
    def _billing_cycle(cls, value: str) -> str:
        if value not in ("monthly", "annual"):
            raise ValueError("Billing cycle must be monthly or annual")
        return value


class OnboardingProgressRequest(CamelModel):
    current_step: Optional[str] = Field(default=None, alias="currentStep", validate_default=True)

    @field_validator("current_step")
    @classmethod
    def _step(cls, value: Optional[str]) -> str:
        return _required_text(value, "Step", 50)


class DismissTooltipRequest(CamelModel):
    tooltip_id: Optional[str] = Field(default=None, alias="tooltipId", validate_default=True)

    @field_validator("tooltip_id")
    @classmethod
    def _tooltip(cls, value: Optional[str]) -> str:
        return _required_text(value, "Tooltip ID", 100)


# ---------------------------------------------------------------------------
# LLM plumbing
# ---------------------------------------------------------------------------


async def stream_chat_text_async(
    llm_client: Any,
    messages: List[Dict[str, str]],
    *,
    system: SystemPrompt,
    model: str,
    max_tokens: int,
    usage: LLMUsage,
    stop: Optional[threading.Event] = None,
    finished: Optional[threading.Event] = None,
    stop_timeout: float = STREAM_STOP_TIMEOUT_SECONDS,
):
    """Bridge the blocking vendor stream to async.

    Closing this generator (or setting ``stop``) halts the worker at the next
    delta and closes the vendor stream. ``finished`` is set once the vendor
    stream is closed, after which ``usage`` is final.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
    worker_errors: List[Exception] = []
    if stop is None:
        stop = threading.Event()

    def stream_worker():
        deltas = llm_client.chat_stream_text(
            messages,
            system=system,
            model=model,
            max_tokens=max_tokens,
            usage=usage,
        )
        try:
            for delta in deltas:
                if stop.is_set():
                    break
                if not delta:
                    continue
                loop.call_soon_threadsafe(queue.put_nowait, delta)
        except Exception as exc:
            worker_errors.append(exc)
        finally:
            if hasattr(deltas, "close"):
                deltas.close()
            if finished is not None:
                finished.set()
            if not loop.is_closed():
                loop.call_soon_threadsafe(queue.put_nowait, None)

    worker = threading.Thread(target=stream_worker, daemon=True)
    worker.start()
    try:
        while True:
            delta = await queue.get()
            if delta is None:
                break
            yield delta
    finally:
        stop.set()
        await asyncio.to_thread(worker.join, stop_timeout)
        if worker.is_alive():
            logger.warning("llm stream worker still running after close model=%s", model)

    if worker_errors:
        raise worker_errors[0]


async def stream_tracked_prose(
    store: StoryStore,
    user_id: str,
    provider: UserProvider,
    model: str,
    messages: List[Dict[str, str]],
    system: SystemPrompt,
    *,
    endpoint: str,
    max_tokens: int,
    project_id: Optional[str] = None,
    book_id: Optional[str] = None,
    scene_id: Optional[str] = None,
) -> StreamingResponse:
    """Stream prose as ``text/plain``; words and usage are recorded when the stream ends.

    The first chunk is awaited before the response starts so a vendor failure
    still becomes a 500 instead of an empty 200.
    """
    usage = LLMUsage()
    started = time.perf_counter()
    stop = threading.Event()
    finished = threading.Event()
    chunks = stream_chat_text_async(
        provider.client,
        messages,
        system=system,
        model=model,
        max_tokens=max_tokens,
        usage=usage,
        stop=stop,
        finished=finished,
    )

    def record(status: UsageStatus, text: str, error_message: Optional[str] = None) -> None:
        if status == UsageStatus.SUCCESS:
            increment_word_usage(store, user_id, count_words(text))
        track_ai_usage(
            store,
            user_id=user_id,
            endpoint=endpoint,
            model=model,
            usage=usage,
            provider=provider.provider,
            project_id=project_id,
            book_id=book_id,
            scene_id=scene_id,
            duration_ms=int((time.perf_counter() - started) * 1000),
            status=status,
            error_message=error_message,
        )

    try:
        first = await chunks.__anext__()
    except StopAsyncIteration:
        first = ""
    except Exception as exc:
        record(UsageStatus.ERROR, "", str(exc))
        if isinstance(exc, LLMError):
            raise
        raise LLMError(provider.provider, model, str(exc)) from exc

    async def finish(status: UsageStatus, text: str, error_message: Optional[str]) -> None:
        stop.set()
        await chunks.aclose()
        if not await asyncio.to_thread(finished.wait, STREAM_STOP_TIMEOUT_SECONDS):
            logger.warning("prose stream worker did not stop endpoint=%s user_id=%s", endpoint, user_id)
        record(status, text, error_message)

    async def body():
        parts: List[str] = []
        status = UsageStatus.SUCCESS
        error_message: Optional[str] = None
        try:
            if first:
                parts.append(first)
                yield first
            async for delta in chunks:
                parts.append(delta)
                yield delta
        except (asyncio.CancelledError, GeneratorExit):
            status = UsageStatus.CANCELLED
            logger.info("prose stream cancelled endpoint=%s user_id=%s chars=%d", endpoint, user_id, sum(map(len, parts)))
            raise
        except Exception as exc:
            status = UsageStatus.ERROR
            error_message = str(exc)
            logger.exception("prose stream failed endpoint=%s user_id=%s", endpoint, user_id)
            raise
        finally:
            finisher = asyncio.ensure_future(finish(status, "".join(parts), error_message))
            _stream_finishers.add(finisher)
            finisher.add_done_callback(_stream_finishers.discard)
            await asyncio.shield(finisher)

    return StreamingResponse(body(), media_type="text/plain; charset=utf-8", headers=STREAM_HEADERS)


async def run_tracked_generation(
    store: StoryStore,
    user_id: str,
    provider: UserProvider,
    model: str,
    endpoint: str,
    func: Callable[..., Tuple[Any, LLMResult]],
    *args: Any,
    project_id: Optional[str] = None,
    book_id: Optional[str] = None,
) -> Any:
    started = time.perf_counter()
    try:
        value, result = await asyncio.to_thread(func, *args)
    except Exception as exc:
        track_ai_usage(
            store,
            user_id=user_id,
            endpoint=endpoint,
            model=model,
            provider=provider.provider,
            project_id=project_id,
            book_id=book_id,
            duration_ms=int((time.perf_counter() - started) * 1000),
            status=UsageStatus.ERROR,
            error_message=str(exc),
        )
        raise
    track_ai_usage(
        store,
        user_id=user_id,
        endpoint=endpoint,
        model=model,
        usage=result.usage,
        provider=provider.provider,
        project_id=project_id,
        book_id=book_id,
        duration_ms=int((time.perf_counter() - started) * 1000),
    )
    return value


# ---------------------------------------------------------------------------
# Health & schema
# ---------------------------------------------------------------------------


@app.get("/api/health")
async def health():
    return {"status": "ok", "version": app.version}


@app.get("/api/schema")
async def story_schema():
    return describe_schema()


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@app.get("/api/projects")
async def list_projects(user_id: str = Depends(current_user)):
    return get_store().list_projects(user_id)


@app.post("/api/projects")
async def create_project(req: ProjectCreateRequest, user_id: str = Depends(current_user)):
    store = get_store()
    ensure_within_limit(check_project_limit(store, user_id))
    fields = req.model_dump(exclude_none=True)
    project = Project(id=str(uuid.uuid4()), user_id=user_id, **fields)
    store.save_project(project)
    logger.info("project created user_id=%s project_id=%s", user_id, project.id)
    return project


@app.get("/api/projects/{project_id}")
async def get_project(project_id: str, user_id: str = Depends(current_user)):
    return owned_project(get_store(), user_id, project_id)


@app.patch("/api/projects/{project_id}")
async def update_project(project_id: str, req: ProjectUpdateRequest, user_id: str = Depends(current_user)):
    store = get_store()
    project = owned_project(store, user_id, project_id)
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise bad_request("No updates provided")
    updated = touched(project, changes)
    store.save_project(updated)
    return updated


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    owned_project(store, user_id, project_id)
    store.delete_project(project_id)
    logger.info("project deleted user_id=%s project_id=%s", user_id, project_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Books
# ---------------------------------------------------------------------------


@app.get("/api/projects/{project_id}/books")
async def list_books(project_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    owned_project(store, user_id, project_id)
    return store.list_books(project_id)


@app.post("/api/books")
async def create_book(req: BookCreateRequest, user_id: str = Depends(current_user)):
    store = get_store()
    owned_project(store, user_id, req.project_id)
    ensure_within_limit(check_book_limit(store, user_id, req.project_id))
    fields = req.model_dump(exclude_none=True)
    if "sort_order" not in fields:
        fields["sort_order"] = store.count_books(req.project_id)
    book = Book(id=str(uuid.uuid4()), **fields)
    store.save_book(book)
    logger.info("book created project_id=%s book_id=%s", book.project_id, book.id)
    return book


@app.get("/api/books/{book_id}")
async def get_book(book_id: str, user_id: str = Depends(current_user)):
    book, _ = owned_book(get_store(), user_id, book_id)
    return book


@app.patch("/api/books/{book_id}")
async def update_book(book_id: str, req: BookUpdateRequest, user_id: str = Depends(current_user)):
    store = get_store()
    book, _ = owned_book(store, user_id, book_id)
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise bad_request("No updates provided")
    updated = touched(book, changes)
    store.save_book(updated)
    return updated


@app.delete("/api/books/{book_id}")
async def delete_book(book_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    owned_book(store, user_id, book_id)
    store.delete_book(book_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Chapters & scenes
# ---------------------------------------------------------------------------


@app.get("/api/books/{book_id}/chapters")
async def list_chapters(book_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    owned_book(store, user_id, book_id)
    return store.list_chapters(book_id)


@app.post("/api/books/{book_id}/chapters")
async def create_chapter(book_id: str, req: ChapterRequest, user_id: str = Depends(current_user)):
    store = get_store()
    owned_book(store, user_id, book_id)
    fields = req.model_dump(exclude_none=True)
    if "order_index" not in fields:
        fields["order_index"] = len(store.list_chapters(book_id))
    chapter = Chapter(id=str(uuid.uuid4()), book_id=book_id, **fields)
    store.save_chapter(chapter)
    return chapter


@app.patch("/api/chapters/{chapter_id}")
async def update_chapter(chapter_id: str, req: ChapterRequest, user_id: str = Depends(current_user)):
    store = get_store()
    chapter, _, _ = owned_chapter(store, user_id, chapter_id)
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise bad_request("No updates provided")
    updated = touched(chapter, changes)
    store.save_chapter(updated)
    return updated


@app.delete("/api/chapters/{chapter_id}")
async def delete_chapter(chapter_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    owned_chapter(store, user_id, chapter_id)
    store.delete_chapter(chapter_id)
    return {"success": True}


@app.get("/api/chapters/{chapter_id}/scenes")
async def list_scenes(chapter_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    owned_chapter(store, user_id, chapter_id)
    return store.list_scenes(chapter_id)


@app.post("/api/chapters/{chapter_id}/scenes")
async def create_scene(chapter_id: str, req: SceneRequest, user_id: str = Depends(current_user)):
    store = get_store()
    owned_chapter(store, user_id, chapter_id)
    fields = req.model_dump(exclude_none=True)
    if "order_index" not in fields:
        fields["order_index"] = len(store.list_scenes(chapter_id))
    scene = Scene(id=str(uuid.uuid4()), chapter_id=chapter_id, **fields)
    store.save_scene(scene)
    return scene


@app.get("/api/scenes/{scene_id}")
async def get_scene(scene_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    scene, _, _, _ = owned_scene(store, user_id, scene_id)
    return {
        **scene.model_dump(mode="json"),
        "characters": [link.model_dump() for link in store.list_scene_characters(scene_id)],
    }


@app.patch("/api/scenes/{scene_id}")
async def update_scene(scene_id: str, req: SceneRequest, user_id: str = Depends(current_user)):
    store = get_store()
    scene, _, _, _ = owned_scene(store, user_id, scene_id)
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise bad_request("No updates provided")
    updated = touched(scene, changes)
    store.save_scene(updated)
    return updated


@app.delete("/api/scenes/{scene_id}")
async def delete_scene(scene_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    owned_scene(store, user_id, scene_id)
    store.delete_scene(scene_id)
    return {"success": True}


@app.put("/api/scenes/{scene_id}/characters")
async def set_scene_characters(scene_id: str, req: SceneCharactersRequest, user_id: str = Depends(current_user)):
    store = get_store()
    _, _, _, project = owned_scene(store, user_id, scene_id)
    node_ids = [link.node_id for link in req.characters]
    nodes = store.get_nodes(node_ids)
    if len({node.id for node in nodes if node.project_id == project.id}) != len(set(node_ids)):
        raise bad_request("Scene characters must be story elements of the same project")
    links = [SceneCharacter(scene_id=scene_id, node_id=link.node_id, pov=link.pov) for link in req.characters]
    store.set_scene_characters(scene_id, links)
    return {"success": True, "characters": links}


@app.get("/api/scenes/{scene_id}/context")
async def scene_context_preview(
    scene_id: str,
    depth: Optional[int] = Query(default=None, ge=0, le=5),
    user_id: str = Depends(current_user),
):
    store = get_store()
    owned_scene(store, user_id, scene_id)
    context = await GraphContextBuilder(store).build_for_scene(
        scene_id, settings.scene_context_depth if depth is None else depth
    )
    formatted = format_context_for_prompt(context) if context is not None else ""
    static_part, book_part, context_part = build_cacheable_system_prompt(formatted, context=context)
    return {
        "context": context,
        "formatted": formatted,
        "system": {"static": static_part, "book": book_part, "scene": context_part},
    }


# ---------------------------------------------------------------------------
# Story graph
# ---------------------------------------------------------------------------


@app.get("/api/projects/{project_id}/nodes")
async def list_nodes(
    project_id: str,
    node_type: Optional[NodeType] = Query(default=None, alias="type"),
    user_id: str = Depends(current_user),
):
    store = get_store()
    owned_project(store, user_id, project_id)
    return store.list_nodes(project_id, node_type.value if node_type else None)


@app.post("/api/story-nodes")
async def create_node(req: NodeCreateRequest, user_id: str = Depends(current_user)):
    store = get_store()
    owned_project(store, user_id, req.project_id)
    ensure_within_limit(check_node_limit(store, user_id, req.project_id))
    node = StoryNode(id=str(uuid.uuid4()), **req.model_dump(exclude_none=True))
    store.save_node(node)
    logger.info("story node created project_id=%s node_id=%s type=%s", node.project_id, node.id, node.node_type.value)
    return node


@app.patch("/api/story-nodes/{node_id}")
async def update_node(node_id: str, req: NodeUpdateRequest, user_id: str = Depends(current_user)):
    store = get_store()
    node, _ = owned_node(store, user_id, node_id)
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise bad_request("No updates provided")
    updated = touched(node, changes)
    store.save_node(updated)
    return updated


@app.delete("/api/story-nodes/{node_id}")
async def delete_node(node_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    owned_node(store, user_id, node_id)
    store.delete_node(node_id)
    return {"success": True}


@app.get("/api/projects/{project_id}/edges")
async def list_edges(project_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    owned_project(store, user_id, project_id)
    return store.list_edges(project_id)


@app.post("/api/story-edges")
async def create_edge(req: EdgeCreateRequest, user_id: str = Depends(current_user)):
    store = get_store()
    owned_project(store, user_id, req.project_id)
    if req.source_node_id == req.target_node_id:
        raise bad_request("A relationship needs two different story elements")
    edge = StoryEdge(id=str(uuid.uuid4()), **req.model_dump())
    try:
        store.save_edge(edge)
    except ValueError as exc:
        raise bad_request(str(exc)) from exc
    return edge


@app.delete("/api/story-edges/{edge_id}")
async def delete_edge(edge_id: str, user_id: str = Depends(current_user)):
    store = get_store()
    edge = store.get_edge(edge_id)
    if edge is None:
        raise HTTPException(status_code=404, detail="Relationship not found")
    owned_project(store, user_id, edge.project_id)
    store.delete_edge(edge_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# AI generation
# ---------------------------------------------------------------------------


@app.post("/api/ai/generate-scene")
async def generate_scene(req: GenerateSceneRequest, user_id: str = Depends(current_user)):
    store = get_store()
    scene, _, book, project = owned_scene(store, user_id, req.scene_id)
    ensure_word_quota(store, user_id)
    provider = resolve_provider(store, user_id, req.model, TaskType.SCENE)
    model = provider.choose_model(req.model)

    context = await GraphContextBuilder(store).build_for_scene(scene.id, settings.scene_context_depth)
    formatted = format_context_for_prompt(context) if context is not None else ""
    system = build_scene_system_blocks(*build_cacheable_system_prompt(formatted, context=context))
    messages = [
        {
            "role": "user",
            "content": f"Expand the following beat instructions into polished prose:\n\n{req.prompt}",
        }
    ]
    logger.info(
        "scene generation start user_id=%s scene_id=%s provider=%s model=%s context_chars=%d",
        user_id,
        scene.id,
        provider.provider,
        model,
        len(formatted),
    )
    return await stream_tracked_prose(
        store,
        user_id,
        provider,
        model,
        messages,
        system,
        endpoint="generate-scene",
        max_tokens=settings.scene_max_tokens,
        project_id=project.id,
        book_id=book.id,
        scene_id=scene.id,
    )


@app.post("/api/ai/edit-prose")
async def edit_prose(req: EditProseRequest, user_id: str = Depends(current_user)):
    if req.action == "custom" and not req.custom_prompt:
        raise bad_request("Custom prompt is required for custom action")
    store = get_store()
    project_id = book_id = None
    if req.scene_id:
        _, _, book, project = owned_scene(store, user_id, req.scene_id)
        project_id, book_id = project.id, book.id
    ensure_word_quota(store, user_id)
    provider = resolve_provider(store, user_id, req.model, TaskType.EDIT)
    model = provider.choose_model(req.model)

    context = None
    if req.scene_id and action_needs_context(req.action):
        context = await GraphContextBuilder(store).build_for_scene(req.scene_id, settings.edit_context_depth)
    prompt = build_edit_prompt(req.action, req.selected_text, req.custom_prompt)
    if req.context:
        prompt = f"SURROUNDING TEXT (for reference only, do not edit):\n{req.context}\n\n{prompt}"
    return await stream_tracked_prose(
        store,
        user_id,
        provider,
        model,
        [{"role": "user", "content": prompt}],
        build_edit_system_prompt(context),
        endpoint=f"edit-prose:{req.action}",
        max_tokens=settings.edit_max_tokens,
        project_id=project_id,
        book_id=book_id,
        scene_id=req.scene_id,
    )


@app.post("/api/ai/generate-outline")
async def generate_outline_endpoint(req: GenerateOutlineRequest, user_id: str = Depends(current_user)):
    store = get_store()
    book, project = owned_book(store, user_id, req.book_id)
    ensure_word_quota(store, user_id)
    provider = resolve_provider(store, user_id, req.model, TaskType.OUTLINE)
    model = provider.choose_model(req.model)
    outline = await run_tracked_generation(
        store,
        user_id,
        provider,
        model,
        "generate-outline",
        generate_outline,
        provider,
        model,
        project,
        book,
        store.list_nodes(project.id),
        store.list_edges(project.id),
        None if req.chapter_count is None else str(req.chapter_count),
        None if req.scenes_per_chapter is None else str(req.scenes_per_chapter),
        req.additional_instructions,
        project_id=project.id,
        book_id=book.id,
    )
    word_count = outline.word_count()
    increment_word_usage(store, user_id, word_count)
    return {"outline": outline, "word_count": word_count}


@app.post("/api/ai/generate-synopsis")
async def generate_synopsis_endpoint(req: BookGenerationRequest, user_id: str = Depends(current_user)):
    store = get_store()
    book, project = owned_book(store, user_id, req.book_id)
    provider = resolve_provider(store, user_id, req.model, TaskType.SYNOPSIS)
    model = provider.choose_model(req.model)
    synopsis = await run_tracked_generation(
        store,
        user_id,
        provider,
        model,
        "generate-synopsis",
        generate_synopsis,
        provider,
        model,
        project,
        book,
        store.list_nodes(project.id),
        store.list_edges(project.id),
        project_id=project.id,
        book_id=book.id,
    )
    return {"synopsis": synopsis}


@app.post("/api/ai/generate-recap")
async def generate_recap_endpoint(req: GenerateRecapRequest, user_id: str = Depends(current_user)):
    store = get_store()
    book, project = owned_book(store, user_id, req.book_id)
    previous_books = previous_books_for(store, book)
    if not previous_books:
        raise bad_request("This is the first book in the series, there is nothing to recap yet")
    provider = resolve_provider(store, user_id, req.model, TaskType.SYNOPSIS)
    model = provider.choose_model(req.model)
    recap = await run_tracked_generation(
        store,
        user_id,
        provider,
        model,
        "generate-recap",
        generate_recap,
        provider,
        model,
        project,
        book,
        previous_books,
        store.list_nodes(project.id),
        project_id=project.id,
        book_id=book.id,
    )
    if req.save:
        store.save_book(touched(book, {"previously_on": recap}))
    return {"recap": recap, "saved": req.save}


@app.post("/api/ai/generate-universe")
async def generate_universe_endpoint(req: GenerateUniverseRequest, user_id: str = Depends(current_user)):
    store = get_store()
    project = owned_project(store, user_id, req.project_id)
    if req.options.total() == 0:
        raise bad_request("Request at least one story element")
    ensure_within_limit(check_node_limit(store, user_id, project.id, adding=req.options.total()))
    provider = resolve_provider(store, user_id, req.model, TaskType.UNIVERSE)
    model = provider.choose_model(req.model)
    universe = await run_tracked_generation(
        store,
        user_id,
        provider,
        model,
        "generate-universe",
        generate_universe,
        provider,
        model,
        project,
        req.options,
        req.prompt,
        project_id=project.id,
    )
    inserted = insert_universe(store, project.id, universe, req.options)
    return {"success": True, **inserted.model_dump()}


@app.post("/api/ai/enrich-nodes")
async def enrich_nodes_endpoint(req: EnrichNodesRequest, user_id: str = Depends(current_user)):
    store = get_store()
    project = owned_project(store, user_id, req.project_id)
    nodes = [node for node in store.get_nodes(req.node_ids) if node.project_id == project.id]
    if not nodes:
        raise HTTPException(status_code=404, detail="No story elements found")
    provider = resolve_provider(store, user_id, req.model, TaskType.UNIVERSE)
    model = provider.choose_model(req.model)
    outcomes = await run_tracked_generation(
        store,
        user_id,
        provider,
        model,
        "enrich-nodes",
        enrich_nodes,
        store,
        provider,
        model,
        project,
        nodes,
        project_id=project.id,
    )
    return {
        "success": True,
        "enriched": sum(1 for outcome in outcomes if outcome.success),
        "results": outcomes,
    }


@app.get("/api/ai/models")
async def list_models(user_id: str = Depends(current_user)):
    profile = get_store().ensure_profile(user_id)
    return {
        "providers": list_provider_configs(),
        "models": get_all_models(),
        "configured": configured_providers(profile),
        "current_provider": profile.ai_provider,
        "default_model": profile.ai_default_model,
        "task_models": profile.task_models,
    }


@app.get("/api/usage")
async def usage_summary(user_id: str = Depends(current_user)):
    store = get_store()
    return {
        "usage": get_user_usage_summary(store, user_id),
        "subscription": get_usage_stats(store, user_id),
    }


# ---------------------------------------------------------------------------
# AI settings
# ---------------------------------------------------------------------------


def _masked_key(sealed: str, user_id: str, provider: str) -> Optional[str]:
    try:
        return mask_api_key(decrypt_api_key_embedded(sealed, settings.api_key_encryption_secret))
    except (KeyDecryptionError, KeyEncryptionError) as exc:
        logger.warning("stored api key unreadable user_id=%s provider=%s error=%s", user_id, provider, exc)
        return None


@app.get("/api/settings/ai")
async def get_ai_settings(user_id: str = Depends(current_user)):
    profile = get_store().ensure_profile(user_id)
    providers: Dict[str, Dict[str, Any]] = {}
    for provider in PROVIDER_IDS:
        sealed = profile.ai_keys.get(provider)
        providers[provider] = {
            "configured": bool(sealed),
            "valid": bool(profile.ai_keys_valid.get(provider)),
            "masked": _masked_key(sealed, user_id, provider) if sealed else None,
        }
    return {
        "provider": profile.ai_provider,
        "default_model": profile.ai_default_model,
        "task_models": profile.task_models,
        "providers": providers,
        "configured": configured_providers(profile),
    }


@app.post("/api/settings/ai-key")
async def save_ai_key(req: ApiKeyRequest, user_id: str = Depends(current_user)):
    if not is_valid_provider(req.provider):
        raise bad_request("Invalid provider")
    display = get_display_name(req.provider)
    if not validate_api_key_format(req.provider, req.api_key):
        raise bad_request(f"Invalid API key format for {display}")

    if settings.verify_api_keys_remotely:
        valid = await asyncio.to_thread(
            verify_api_key_remote, req.provider, req.api_key, settings.key_probe_timeout_seconds
        )
        if not valid:
            raise bad_request("API key validation failed. Please check your key and try again.")

    try:
        sealed = encrypt_api_key_embedded(req.api_key, settings.api_key_encryption_secret)
        legacy = encrypt_api_key(req.api_key, settings.api_key_encryption_secret)
    except KeyEncryptionError as exc:
        logger.error("api key encryption unavailable error=%s", exc)
        raise ApiError(500, {"error": "API key encryption is not configured"}) from exc

    store = get_store()
    profile = store.ensure_profile(user_id)
    default_model = profile.ai_default_model
    if not is_valid_model(req.provider, default_model):
        default_model = get_default_model(req.provider)
    store.update_profile(
        user_id,
        ai_keys={**profile.ai_keys, req.provider: sealed},
        ai_keys_valid={**profile.ai_keys_valid, req.provider: True},
        ai_provider=req.provider,
        ai_default_model=default_model,
        ai_api_key_encrypted=legacy["encrypted"],
        ai_api_key_iv=legacy["iv"],
        ai_api_key_valid=True,
    )
    logger.info("api key saved user_id=%s provider=%s", user_id, req.provider)
    return {"success": True, "provider": req.provider, "masked": mask_api_key(req.api_key)}


@app.delete("/api/settings/ai-key")
async def delete_ai_key(provider: Optional[str] = Query(default=None), user_id: str = Depends(current_user)):
    store = get_store()
    profile = store.ensure_profile(user_id)
    legacy_cleared = {"ai_api_key_encrypted": None, "ai_api_key_iv": None, "ai_api_key_valid": False}

    if provider is None:
        store.update_profile(user_id, ai_keys={}, ai_keys_valid={}, **legacy_cleared)
        logger.info("api keys cleared user_id=%s", user_id)
        return {"success": True}

    if not is_valid_provider(provider):
        raise bad_request("Invalid provider")
    changes: Dict[str, Any] = {
        "ai_keys": {**profile.ai_keys, provider: None},
        "ai_keys_valid": {**profile.ai_keys_valid, provider: False},
    }
    if profile.ai_provider == provider:
        changes.update(legacy_cleared)
    store.update_profile(user_id, **changes)
    logger.info("api key removed user_id=%s provider=%s", user_id, provider)
    return {"success": True, "provider": provider}


@app.post("/api/settings/ai-provider")
async def update_ai_provider(req: ProviderSettingsRequest, user_id: str = Depends(current_user)):
    if req.provider is None and req.default_model is None and req.task_models is None:
        raise bad_request("No updates provided")
    store = get_store()
    profile = store.ensure_profile(user_id)
    changes: Dict[str, Any] = {}

    if req.provider is not None:
        if not is_valid_provider(req.provider):
            raise bad_request("Invalid provider")
        if req.provider not in configured_providers(profile):
            raise bad_request(f"No valid API key for {get_display_name(req.provider)}. Please add one first.")
        changes["ai_provider"] = req.provider
        if req.default_model is None and not is_valid_model(req.provider, profile.ai_default_model):
            changes["ai_default_model"] = get_default_model(req.provider)

    if req.default_model is not None:
        if get_provider_for_model(req.default_model) is None:
            raise bad_request("Unknown model")
        changes["ai_default_model"] = req.default_model

    if req.task_models is not None:
        task_types = {task.value for task in TaskType}
        for task, model in req.task_models.items():
            if task not in task_types:
                raise bad_request(f"Invalid task type: {task}")
            if model and get_provider_for_model(model) is None:
                raise bad_request("Unknown model")
        changes["task_models"] = {**profile.task_models, **req.task_models}

    updated = store.update_profile(user_id, **changes)
    logger.info("ai settings updated user_id=%s fields=%s", user_id, ",".join(sorted(changes)))
    return {
        "success": True,
        "provider": updated.ai_provider,
        "default_model": updated.ai_default_model,
        "task_models": updated.task_models,
    }


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


@app.post("/api/billing/checkout")
async def billing_checkout(req: CheckoutRequest, request: Request, user_id: str = Depends(current_user)):
    profile = get_store().ensure_profile(user_id)
    url = await asyncio.to_thread(
        billing_service().create_checkout_session,
        user_id,
        request.headers.get("X-User-Email") or profile.email,
        req.billing_cycle,
    )
    return {"url": url}


@app.post("/api/billing/portal")
async def billing_portal(user_id: str = Depends(current_user)):
    url = await asyncio.to_thread(billing_service().create_portal_session, user_id)
    if url is None:
        raise bad_request("No billing account found")
    return {"url": url}


@app.post("/api/billing/webhook")
async def billing_webhook(request: Request):
    service = billing_service()
    payload = await request.body()
    event = service.construct_event(payload, request.headers.get("stripe-signature"))
    try:
        handled = await asyncio.to_thread(service.handle_event, event)
    except stripe.StripeError as exc:
        logger.exception("stripe webhook handler failed")
        raise BillingError("Webhook handler failed") from exc
    return {"received": True, "handled": handled}


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------


@app.get("/api/onboarding/status")
async def onboarding_status(user_id: str = Depends(current_user)):
    profile = get_store().ensure_profile(user_id)
    return {
        "completed": profile.onboarding_completed_at is not None,
        "completed_at": profile.onboarding_completed_at,
        "skipped": profile.onboarding_skipped_at is not None,
        "skipped_at": profile.onboarding_skipped_at,
        "current_step": profile.onboarding_current_step,
        "banner_dismissed": profile.onboarding_banner_dismissed_at is not None,
        "tooltips_dismissed": profile.onboarding_tooltips_dismissed,
        "show_onboarding": profile.onboarding_completed_at is None and profile.onboarding_skipped_at is None,
    }


@app.patch("/api/onboarding/progress")
async def onboarding_progress(req: OnboardingProgressRequest, user_id: str = Depends(current_user)):
    get_store().update_profile(user_id, onboarding_current_step=req.current_step)
    return {"success": True, "current_step": req.current_step}


@app.post("/api/onboarding/complete")
async def onboarding_complete(user_id: str = Depends(current_user)):
    get_store().update_profile(user_id, onboarding_completed_at=datetime.now(), onboarding_current_step="complete")
    return {"success": True}


@app.post("/api/onboarding/skip")
async def onboarding_skip(user_id: str = Depends(current_user)):
    get_store().update_profile(user_id, onboarding_skipped_at=datetime.now())
    return {"success": True}


@app.post("/api/onboarding/dismiss-banner")
async def onboarding_dismiss_banner(user_id: str = Depends(current_user)):
    get_store().update_profile(user_id, onboarding_banner_dismissed_at=datetime.now())
    return {"success": True}


@app.post("/api/onboarding/dismiss-tooltip")
async def onboarding_dismiss_tooltip(req: DismissTooltipRequest, user_id: str = Depends(current_user)):
    store = get_store()
    profile = store.ensure_profile(user_id)
    if req.tooltip_id in profile.onboarding_tooltips_dismissed:
        return {"success": True, "already_dismissed": True}
    store.update_profile(
        user_id,
        onboarding_tooltips_dismissed=[*profile.onboarding_tooltips_dismissed, req.tooltip_id],
    )
    return {"success": True, "already_dismissed": False}


@app.post("/api/onboarding/reset")
async def onboarding_reset(user_id: str = Depends(current_user)):
    get_store().update_profile(
        user_id,
        onboarding_completed_at=None,
        onboarding_skipped_at=None,
        onboarding_banner_dismissed_at=None,
        onboarding_tooltips_dismissed=[],
        onboarding_current_step="welcome",
    )
    return {"success": True, "current_step": "welcome"}


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


@app.get("/api/export/txt")
async def export_txt(book_id: Optional[str] = Query(default=None, alias="bookId"), user_id: str = Depends(current_user)):
    if not book_id:
        raise bad_request("bookId is required")
    store = get_store()
    book, project = owned_book(store, user_id, book_id)
    filename, text = export_book_text(store, book, project)
    logger.info("book exported user_id=%s book_id=%s chars=%d", user_id, book.id, len(text))
    return Response(
        content=text,
        media_type="text/plain; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
