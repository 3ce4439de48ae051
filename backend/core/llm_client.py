import time
import logging
from contextlib import closing
from typing import List, Optional, Dict, Any, Iterator, Union
from enum import Enum

from pydantic import BaseModel, Field


# rough output estimate for streams closed before the vendor reports usage
CHARS_PER_TOKEN_ESTIMATE = 4


class LLMProvider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"


class LLMError(Exception):
    """A vendor call failed after the client was constructed."""

    def __init__(self, provider: str, model: str, message: str):
        super().__init__(message)
        self.provider = provider
        self.model = model


class SystemBlock(BaseModel):
    text: str
    cacheable: bool = False


class LLMUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class LLMResult(BaseModel):
    text: str
    model: str
    usage: LLMUsage = Field(default_factory=LLMUsage)


SystemPrompt = Union[str, List[SystemBlock], None]


class LLMConfig:
    def __init__(
        self,
        provider: LLMProvider,
        api_key: str,
        model: str,
        chat_max_tokens: Optional[int] = None,
        chat_temperature: Optional[float] = None,
    ):
        self.provider = provider
        self.api_key = api_key
        self.model = model
        self.chat_max_tokens = _safe_positive_int(chat_max_tokens, 4096)
        self.chat_temperature = (
            None if chat_temperature is None else _safe_temperature(chat_temperature, 0.7)
        )


def _safe_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
        if parsed > 0:
            return parsed
    except (TypeError, ValueError):
        pass
    return fallback


def _safe_temperature(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    return min(max(parsed, 0.0), 1.0)


def _system_text(system: SystemPrompt) -> str:
    if not system:
        return ""
    if isinstance(system, str):
        return system
    return "\n\n".join(block.text for block in system)


class LLMClient:
    """Thin wrapper over the Anthropic, OpenAI and Google SDKs.

    All three vendors take a system prompt plus ``[{"role", "content"}]``
    messages and report token usage. Cache-control markers on system blocks
    are only sent to Anthropic; other vendors receive the blocks joined.
    """

    def __init__(self, config: LLMConfig):
        self.config = config
        self._client = None
        self._logger = logging.getLogger("novelworld.llm")

    @property
    def provider(self) -> str:
        return self.config.provider.value

    def _get_client(self):
        if self._client is not None:
            return self._client

        if self.config.provider == LLMProvider.ANTHROPIC:
            import anthropic

            self._client = anthropic.Anthropic(api_key=self.config.api_key)
        elif self.config.provider == LLMProvider.OPENAI:
            from openai import OpenAI

            self._client = OpenAI(api_key=self.config.api_key)
        else:
            from google import genai

            self._client = genai.Client(api_key=self.config.api_key)
        return self._client

    def prepare(self) -> "LLMClient":
        """Construct the vendor SDK client eagerly so init errors surface early."""
        self._get_client()
        return self

    # ------------------------------------------------------------------
    # Request shaping
    # ------------------------------------------------------------------

    def _anthropic_system(self, system: SystemPrompt) -> Any:
        if not system:
            return []
        if isinstance(system, str):
            return system
        blocks = []
        for block in system:
            item: Dict[str, Any] = {"type": "text", "text": block.text}
            if block.cacheable:
                item["cache_control"] = {"type": "ephemeral"}
            blocks.append(item)
        return blocks

    def _openai_messages(self, system: SystemPrompt, messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        text = _system_text(system)
        prefix = [{"role": "system", "content": text}] if text else []
        return prefix + list(messages)

    def _google_request(self, system: SystemPrompt, messages: List[Dict[str, str]], max_tokens: int):
        contents = [
            {
                "role": "model" if message["role"] == "assistant" else "user",
                "parts": [{"text": message["content"]}],
            }
            for message in messages
        ]
        config: Dict[str, Any] = {"max_output_tokens": max_tokens}
        text = _system_text(system)
        if text:
            config["system_instruction"] = text
        if self.config.chat_temperature is not None:
            config["temperature"] = self.config.chat_temperature
        return contents, config

    # ------------------------------------------------------------------
    # Usage extraction
    # ------------------------------------------------------------------

    def _anthropic_usage(self, usage: Any) -> LLMUsage:
        if usage is None:
            return LLMUsage()
        created = getattr(usage, "cache_creation_input_tokens", 0) or 0
        read = getattr(usage, "cache_read_input_tokens", 0) or 0
        # input_tokens excludes cached tokens here; other vendors report the total
        return LLMUsage(
            input_tokens=(getattr(usage, "input_tokens", 0) or 0) + created + read,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            cache_creation_input_tokens=created,
            cache_read_input_tokens=read,
        )

    def _openai_usage(self, usage: Any) -> LLMUsage:
        if usage is None:
            return LLMUsage()
        details = getattr(usage, "prompt_tokens_details", None)
        return LLMUsage(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            cache_read_input_tokens=getattr(details, "cached_tokens", 0) or 0,
        )

    def _google_usage(self, metadata: Any) -> LLMUsage:
        if metadata is None:
            return LLMUsage()
        return LLMUsage(
            input_tokens=getattr(metadata, "prompt_token_count", 0) or 0,
            output_tokens=getattr(metadata, "candidates_token_count", 0) or 0,
            cache_read_input_tokens=getattr(metadata, "cached_content_token_count", 0) or 0,
        )

    def _extract_stream_delta_text(self, chunk: Any) -> str:
        choices = getattr(chunk, "choices", None)
        if not choices:
            return ""
        delta = getattr(choices[0], "delta", None)
        content = getattr(delta, "content", None) if delta is not None else None
        return content if isinstance(content, str) else ""

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def chat(
        self,
        messages: List[Dict[str, str]],
        system: SystemPrompt = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResult:
        actual_model = model or self.config.model
        actual_max_tokens = _safe_positive_int(max_tokens, self.config.chat_max_tokens)
        started = time.perf_counter()
        try:
            client = self._get_client()
            if self.config.provider == LLMProvider.ANTHROPIC:
                kwargs: Dict[str, Any] = {
                    "model": actual_model,
                    "max_tokens": actual_max_tokens,
                    "system": self._anthropic_system(system),
                    "messages": messages,
                }
                if self.config.chat_temperature is not None:
                    kwargs["temperature"] = self.config.chat_temperature
                response = client.messages.create(**kwargs)
                text = "".join(
                    getattr(block, "text", "") for block in response.content if getattr(block, "type", "") == "text"
                )
                usage = self._anthropic_usage(response.usage)
            elif self.config.provider == LLMProvider.OPENAI:
                kwargs = {
                    "model": actual_model,
                    "max_tokens": actual_max_tokens,
                    "messages": self._openai_messages(system, messages),
                }
                if self.config.chat_temperature is not None:
                    kwargs["temperature"] = self.config.chat_temperature
                response = client.chat.completions.create(**kwargs)
                text = response.choices[0].message.content or ""
                usage = self._openai_usage(response.usage)
            else:
                contents, config = self._google_request(system, messages, actual_max_tokens)
                response = client.models.generate_content(model=actual_model, contents=contents, config=config)
                text = response.text or ""
                usage = self._google_usage(getattr(response, "usage_metadata", None))
        except Exception as exc:
            self._logger.warning(
                "llm chat remote failed provider=%s model=%s error=%s",
                self.provider,
                actual_model,
                exc,
            )
            raise LLMError(self.provider, actual_model, str(exc)) from exc

        self._logger.info(
            "llm chat remote success provider=%s model=%s latency_ms=%.2f chars=%d input_tokens=%d output_tokens=%d",
            self.provider,
            actual_model,
            (time.perf_counter() - started) * 1000,
            len(text),
            usage.input_tokens,
            usage.output_tokens,
        )
        return LLMResult(text=text, model=actual_model, usage=usage)

    def chat_stream_text(
        self,
        messages: List[Dict[str, str]],
        system: SystemPrompt = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        usage: Optional[LLMUsage] = None,
    ) -> Iterator[str]:
        """Yield text deltas; token counts are written into ``usage`` when the stream ends.

        Closing the generator early closes the vendor stream and writes the
        usage reported so far, estimating output tokens from the text emitted
        when the vendor has not reported them yet.
        """
        actual_model = model or self.config.model
        actual_max_tokens = _safe_positive_int(max_tokens, self.config.chat_max_tokens)
        sink = usage if usage is not None else LLMUsage()
        started = time.perf_counter()
        emitted_chars = 0
        reported = LLMUsage()
        try:
            client = self._get_client()
            if self.config.provider == LLMProvider.ANTHROPIC:
                kwargs: Dict[str, Any] = {
                    "model": actual_model,
                    "max_tokens": actual_max_tokens,
                    "system": self._anthropic_system(system),
                    "messages": messages,
                }
                if self.config.chat_temperature is not None:
                    kwargs["temperature"] = self.config.chat_temperature
                with client.messages.stream(**kwargs) as stream:
                    for text in stream.text_stream:
                        if not text:
                            continue
                        emitted_chars += len(text)
                        yield text
                    final = stream.get_final_message()
                reported = self._anthropic_usage(getattr(final, "usage", None))
            elif self.config.provider == LLMProvider.OPENAI:
                kwargs = {
                    "model": actual_model,
                    "max_tokens": actual_max_tokens,
                    "messages": self._openai_messages(system, messages),
                    "stream": True,
                    "stream_options": {"include_usage": True},
                }
                if self.config.chat_temperature is not None:
                    kwargs["temperature"] = self.config.chat_temperature
                with client.chat.completions.create(**kwargs) as response:
                    for chunk in response:
                        if getattr(chunk, "usage", None) is not None:
                            reported = self._openai_usage(chunk.usage)
                        text = self._extract_stream_delta_text(chunk)
                        if not text:
                            continue
                        emitted_chars += len(text)
                        yield text
            else:
                contents, config = self._google_request(system, messages, actual_max_tokens)
                with closing(
                    client.models.generate_content_stream(model=actual_model, contents=contents, config=config)
                ) as response:
                    for chunk in response:
                        if getattr(chunk, "usage_metadata", None) is not None:
                            reported = self._google_usage(chunk.usage_metadata)
                        text = getattr(chunk, "text", None)
                        if not text:
                            continue
                        emitted_chars += len(text)
                        yield text
        except GeneratorExit:
            if not reported.output_tokens and emitted_chars:
                reported.output_tokens = max(1, emitted_chars // CHARS_PER_TOKEN_ESTIMATE)
            for field_name, value in reported.model_dump().items():
                setattr(sink, field_name, value)
            self._logger.info(
                "llm chat remote stream closed early provider=%s model=%s chars=%d output_tokens=%d",
                self.provider,
                actual_model,
                emitted_chars,
                sink.output_tokens,
            )
            raise
        except Exception as exc:
            self._logger.warning(
                "llm chat remote stream failed provider=%s model=%s chars=%d error=%s",
                self.provider,
                actual_model,
                emitted_chars,
                exc,
            )
            raise LLMError(self.provider, actual_model, str(exc)) from exc

        for field_name, value in reported.model_dump().items():
            setattr(sink, field_name, value)
        self._logger.info(
            "llm chat remote stream done provider=%s model=%s latency_ms=%.2f chars=%d",
            self.provider,
            actual_model,
            (time.perf_counter() - started) * 1000,
            emitted_chars,
        )


def create_llm_client(
    provider: str,
    api_key: str,
    model: str,
    **kwargs
) -> LLMClient:
    try:
        llm_provider = LLMProvider((provider or "").strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown LLM provider: {provider}") from exc
    config = LLMConfig(provider=llm_provider, api_key=api_key, model=model, **kwargs)
    return LLMClient(config)
