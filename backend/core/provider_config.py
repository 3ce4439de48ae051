from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, List, Optional


_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "anthropic": {
        "id": "anthropic",
        "display_name": "Anthropic (Claude)",
        "key_prefix": "sk-ant-",
        "key_placeholder": "sk-ant-api03-...",
        "docs_url": "https://console.anthropic.com/settings/keys",
        "default_model": "claude-sonnet-4-20250514",
        "models": [
            {
                "id": "claude-opus-4-20250514",
                "display_name": "Claude Opus 4",
                "description": "Most capable, best for complex creative writing",
                "tier": "premium",
                "context_window": 200000,
            },
            {
                "id": "claude-sonnet-4-20250514",
                "display_name": "Claude Sonnet 4",
                "description": "Balanced performance and cost",
                "tier": "standard",
                "context_window": 200000,
            },
            {
                "id": "claude-3-5-haiku-20241022",
                "display_name": "Claude 3.5 Haiku",
                "description": "Fast and affordable",
                "tier": "fast",
                "context_window": 200000,
            },
        ],
    },
    "openai": {
        "id": "openai",
        "display_name": "OpenAI (GPT)",
        "key_prefix": "sk-",
        "key_placeholder": "sk-proj-...",
        "docs_url": "https://platform.openai.com/api-keys",
        "default_model": "gpt-4o",
        "models": [
            {
                "id": "gpt-4o",
                "display_name": "GPT-4o",
                "description": "Most capable GPT model",
                "tier": "premium",
                "context_window": 128000,
            },
            {
                "id": "gpt-4-turbo",
                "display_name": "GPT-4 Turbo",
                "description": "Fast GPT-4 with large context",
                "tier": "standard",
                "context_window": 128000,
            },
            {
                "id": "gpt-4o-mini",
                "display_name": "GPT-4o Mini",
                "description": "Fast and affordable",
                "tier": "fast",
                "context_window": 128000,
            },
        ],
    },
    "google": {
        "id": "google",
        "display_name": "Google (Gemini)",
        "key_prefix": "AI",
        "key_placeholder": "AIza...",
        "docs_url": "https://aistudio.google.com/app/apikey",
        "default_model": "gemini-2.0-flash",
        "models": [
            {
                "id": "gemini-2.5-pro-preview-06-05",
                "display_name": "Gemini 2.5 Pro",
                "description": "Most capable Gemini model",
                "tier": "premium",
                "context_window": 1000000,
            },
            {
                "id": "gemini-2.0-flash",
                "display_name": "Gemini 2.0 Flash",
                "description": "Fast and capable",
                "tier": "standard",
                "context_window": 1000000,
            },
            {
                "id": "gemini-2.0-flash-lite",
                "display_name": "Gemini 2.0 Flash Lite",
                "description": "Fastest and most affordable",
                "tier": "fast",
                "context_window": 1000000,
            },
        ],
    },
}

PROVIDER_IDS: List[str] = list(_PROVIDERS)
DEFAULT_PROVIDER = "anthropic"


def list_provider_configs() -> List[Dict[str, Any]]:
    return deepcopy(list(_PROVIDERS.values()))


def get_provider_config(provider: Optional[str]) -> Dict[str, Any]:
    """Catalog entry for a provider; unknown ids resolve to the Anthropic entry."""
    return deepcopy(_PROVIDERS.get(provider or "", _PROVIDERS[DEFAULT_PROVIDER]))


def get_display_name(provider: Optional[str]) -> str:
    return get_provider_config(provider)["display_name"]


def get_default_model(provider: Optional[str]) -> str:
    return get_provider_config(provider)["default_model"]


def is_valid_provider(provider: Optional[str]) -> bool:
    return bool(provider) and provider in _PROVIDERS


def is_valid_model(provider: Optional[str], model_id: Optional[str]) -> bool:
    if not is_valid_provider(provider) or not model_id:
        return False
    return any(model["id"] == model_id for model in _PROVIDERS[provider]["models"])


def get_provider_for_model(model_id: Optional[str]) -> Optional[str]:
    if not model_id:
        return None
    for provider_id, config in _PROVIDERS.items():
        if any(model["id"] == model_id for model in config["models"]):
            return provider_id
    return None


def validate_api_key_format(provider: Optional[str], api_key: Optional[str]) -> bool:
    if not is_valid_provider(provider) or not api_key:
        return False
    # sk-proj- and legacy sk- keys share the prefix
    return api_key.startswith(_PROVIDERS[provider]["key_prefix"])


def get_all_models() -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    for provider_id, config in _PROVIDERS.items():
        for model in config["models"]:
            items.append(
                {
                    **model,
                    "provider": provider_id,
                    "provider_name": config["display_name"],
                }
            )
    return items
