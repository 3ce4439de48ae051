"""Resolve a user's LLM vendor, model and decrypted key into a ready client."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests

from core.key_encryption import (
    KeyDecryptionError,
    KeyEncryptionError,
    decrypt_api_key,
    decrypt_api_key_embedded,
)
from core.llm_client import LLMClient, create_llm_client
from core.provider_config import (
    DEFAULT_PROVIDER,
    PROVIDER_IDS,
    get_default_model,
    get_display_name,
    get_provider_for_model,
    is_valid_model,
)
from models import Profile
from storage import StoryStore

logger = logging.getLogger("novelworld.provider")

ERROR_NO_KEY = "NO_KEY"
ERROR_INVALID_KEY = "INVALID_KEY"
ERROR_DECRYPTION = "DECRYPTION_ERROR"
ERROR_PROVIDER = "PROVIDER_ERROR"


class ProviderError(Exception):
    def __init__(self, message: str, code: str, provider: str):
        super().__init__(message)
        self.message = message
        self.code = code
        self.provider = provider

    def to_payload(self) -> Dict[str, str]:
        return {
            "error": "provider_error",
            "code": self.code,
            "message": self.message,
            "provider": self.provider,
        }


@dataclass
class UserProvider:
    client: LLMClient
    provider: str
    default_model_id: str

    def choose_model(self, requested: Optional[str]) -> str:
        if requested and is_valid_model(self.provider, requested):
            return requested
        return self.default_model_id


def configured_providers(profile: Profile) -> List[str]:
    """Providers with a usable stored key, including a valid legacy key."""
    valid = [provider for provider in PROVIDER_IDS if profile.ai_keys.get(provider) and profile.ai_keys_valid.get(provider)]
    if (
        profile.ai_api_key_valid
        and profile.ai_api_key_encrypted
        and profile.ai_provider in PROVIDER_IDS
        and profile.ai_provider not in valid
    ):
        valid.append(profile.ai_provider)
    return valid


def _task_model(profile: Profile, task: Optional[str]) -> Optional[str]:
    if not task:
        return None
    return profile.task_models.get(task) or None


def _decrypt_key(profile: Profile, provider: str, secret: Optional[str]) -> str:
    display = get_display_name(provider)
    embedded = profile.ai_keys.get(provider)
    embedded_valid = bool(profile.ai_keys_valid.get(provider))

    if embedded and embedded_valid:
        try:
            return decrypt_api_key_embedded(embedded, secret)
        except (KeyDecryptionError, KeyEncryptionError) as exc:
            logger.warning("api key decrypt failed user_id=%s provider=%s error=%s", profile.id, provider, exc)
            raise ProviderError(
                f"Failed to decrypt {display} API key. Please re-enter your key in Settings.",
                ERROR_DECRYPTION,
                provider,
            ) from exc

    if profile.ai_api_key_encrypted and profile.ai_api_key_iv and profile.ai_provider == provider:
        try:
            return decrypt_api_key(profile.ai_api_key_encrypted, profile.ai_api_key_iv, secret)
        except (KeyDecryptionError, KeyEncryptionError) as exc:
            logger.warning("legacy api key decrypt failed user_id=%s provider=%s error=%s", profile.id, provider, exc)
            raise ProviderError(
                "Failed to decrypt API key. Please re-enter your key in Settings.",
                ERROR_DECRYPTION,
                provider,
            ) from exc

    if embedded and not embedded_valid:
        raise ProviderError(
            f"Your {display} API key was rejected. Please update it in Settings.",
            ERROR_INVALID_KEY,
            provider,
        )

    raise ProviderError(
        f"No API key configured for {display}. Please add your API key in Settings.",
        ERROR_NO_KEY,
        provider,
    )


def get_user_provider(
    store: StoryStore,
    user_id: str,
    secret: Optional[str],
    requested_model: Optional[str] = None,
    task: Optional[str] = None,
) -> UserProvider:
    """Pick vendor and model for a user and return a constructed client.

    Vendor: the requested model's vendor, else the task model's vendor, else
    the profile's provider. Model: requested, else task model, else the
    profile default, falling back to the vendor default when the choice does
    not belong to the vendor.
    """
    try:
        profile = store.get_profile(user_id)
    except Exception as exc:
        logger.exception("profile load failed user_id=%s", user_id)
        raise ProviderError(
            "Failed to load AI settings. Please try again or contact support.",
            ERROR_PROVIDER,
            DEFAULT_PROVIDER,
        ) from exc
    profile = profile or Profile(id=user_id)

    task_model = _task_model(profile, task)
    preferred_model = requested_model or task_model
    provider = (
        get_provider_for_model(preferred_model)
        or profile.ai_provider
        or DEFAULT_PROVIDER
    )
    if provider not in PROVIDER_IDS:
        provider = DEFAULT_PROVIDER

    api_key = _decrypt_key(profile, provider, secret)

    default_model_id = preferred_model or profile.ai_default_model
    if not default_model_id or not is_valid_model(provider, default_model_id):
        default_model_id = get_default_model(provider)

    try:
        client = create_llm_client(provider, api_key=api_key, model=default_model_id).prepare()
    except Exception as exc:
        logger.exception("provider init failed user_id=%s provider=%s", user_id, provider)
        raise ProviderError(
            f"Failed to initialize {get_display_name(provider)} provider",
            ERROR_PROVIDER,
            provider,
        ) from exc

    logger.info(
        "provider resolved user_id=%s provider=%s model=%s task=%s",
        user_id,
        provider,
        default_model_id,
        task or "-",
    )
    return UserProvider(client=client, provider=provider, default_model_id=default_model_id)


def verify_api_key_remote(provider: str, api_key: str, timeout: float = 10.0) -> bool:
    """Make one cheap authenticated call to the vendor to check the key."""
    try:
        if provider == "anthropic":
            response = requests.post(
                "https://api.anthropic.com/v1/messages",
                headers={
                    "x-api-key": api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json={
                    "model": "claude-3-haiku-20240307",
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "Hi"}],
                },
                timeout=timeout,
            )
            return response.status_code != 401
        if provider == "openai":
            response = requests.get(
                "https://api.openai.com/v1/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=timeout,
            )
            return response.ok
        if provider == "google":
            response = requests.get(
                "https://generativelanguage.googleapis.com/v1/models",
                headers={"x-goog-api-key": api_key},
                timeout=timeout,
            )
            return response.ok
    except requests.RequestException as exc:
        logger.warning("api key probe failed provider=%s error=%s", provider, exc)
        return False
    return False
