"""Generation providers behind an OpenAI-compatible Responses API.

Both bots talk to the same ``/responses`` endpoint shape: ChatGPT through
OpenAI (optionally with a stored prompt template), Grok through xAI. All
HTTP failures are converted into :class:`ProviderError` here so callers
only ever deal with one error type.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from chatppc.config import Settings
from chatppc.errors import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)

PROVIDER_TARGET_PREFIX = "provider:"


class AiProvider(str, Enum):
    CHATGPT = "chatgpt"
    GROK = "grok"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def mention(self) -> str:
        return f"@{self.value}"

    @property
    def target_key(self) -> str:
        return f"{PROVIDER_TARGET_PREFIX}{self.value}"

    @property
    def supports_image_generation(self) -> bool:
        return self is AiProvider.CHATGPT


_DISPLAY_NAMES = {AiProvider.CHATGPT: "ChatGPT", AiProvider.GROK: "Grok"}
_ERROR_LABELS = {AiProvider.CHATGPT: "OpenAI", AiProvider.GROK: "Grok"}

_MENTION_PATTERNS = {
    AiProvider.CHATGPT: re.compile(r"(^|\s)@chatgpt\b", re.IGNORECASE),
    AiProvider.GROK: re.compile(r"(^|\s)@grok\b", re.IGNORECASE),
}


def detect_ai_providers(message: str) -> list[AiProvider]:
    """Providers mentioned in ``message``, in order of first mention."""
    found: list[tuple[int, AiProvider]] = []
    for provider, pattern in _MENTION_PATTERNS.items():
        match = pattern.search(message)
        if match:
            found.append((match.start(), provider))
    return [provider for _, provider in sorted(found, key=lambda item: item[0])]


def provider_from_target_key(target_key: str) -> AiProvider | None:
    if not target_key.startswith(PROVIDER_TARGET_PREFIX):
        return None
    try:
        return AiProvider(target_key[len(PROVIDER_TARGET_PREFIX):])
    except ValueError:
        return None


def is_ai_display_name(name: str) -> bool:
    normalized = name.strip().lower()
    return any(label.lower() == normalized for label in _DISPLAY_NAMES.values())


def error_label(provider: AiProvider) -> str:
    """Vendor name used in user-visible failure messages."""
    return _ERROR_LABELS[provider]


def is_provider_configured(provider: AiProvider, settings: Settings) -> bool:
    if provider is AiProvider.GROK:
        return bool(settings.grok_api_key)
    return bool(settings.openai_api_key)


def any_provider_configured(settings: Settings) -> bool:
    return any(is_provider_configured(provider, settings) for provider in AiProvider)


# ── Responses API client ─────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ProviderResponse:
    """Result of a Responses API call.

    ``images`` holds one base64 data URL per ``image_generation_call`` item.
    """

    text: str
    model: str | None
    images: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ModelChoice:
    """Model selection for one request: a named model or a stored prompt."""

    model: str | None = None
    prompt_id: str | None = None
    prompt_version: str | None = None

    def as_request_fields(self) -> dict[str, Any]:
        if self.prompt_id:
            prompt: dict[str, Any] = {"id": self.prompt_id}
            if self.prompt_version:
                prompt["version"] = self.prompt_version
            return {"prompt": prompt}
        return {"model": self.model}


def _is_context_window_message(message: str) -> bool:
    text = message.lower()
    return "context window" in text or ("input" in text and "exceeds" in text)


def _extract_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return f"HTTP {response.status_code}"


def extract_output_text(data: dict[str, Any]) -> str:
    """Read ``output_text`` or concatenate the text parts of output messages."""
    output_text = data.get("output_text")
    if isinstance(output_text, str):
        return output_text

    parts: list[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if isinstance(content, dict) and content.get("type") == "output_text":
                text = content.get("text")
                if isinstance(text, str):
                    parts.append(text)
    return "".join(parts)


def extract_generated_images(data: dict[str, Any]) -> tuple[str, ...]:
    """Data URLs for the finished ``image_generation_call`` output items."""
    images: list[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "image_generation_call":
            continue
        result = item.get("result")
        if not isinstance(result, str) or not result:
            continue
        output_format = item.get("output_format")
        if not isinstance(output_format, str) or not output_format:
            output_format = "png"
        images.append(f"data:image/{output_format.lower()};base64,{result}")
    return tuple(images)


class ResponsesClient:
    """Minimal async client for ``POST {base_url}/responses``."""

    __slots__ = ("base_url", "_api_key", "_timeout", "_transport")

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 90.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def create(
        self,
        *,
        input: list[dict[str, Any]],
        choice: ModelChoice,
        extra: dict[str, Any] | None = None,
    ) -> ProviderResponse:
        payload: dict[str, Any] = {**choice.as_request_fields(), "input": input}
        if extra:
            payload.update(extra)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/responses", json=payload, headers=headers
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            message = _extract_error_message(exc.response)
            if _is_context_window_message(message):
                kind = ProviderErrorKind.CONTEXT_OVERFLOW
            elif status >= 500:
                kind = ProviderErrorKind.SERVER
            else:
                kind = ProviderErrorKind.CLIENT
            raise ProviderError(message, kind=kind, status_code=status) from exc
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"Request timed out after {self._timeout}s",
                kind=ProviderErrorKind.TRANSPORT,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"Cannot reach {self.base_url}: {exc}",
                kind=ProviderErrorKind.TRANSPORT,
            ) from exc
        except ValueError as exc:
            raise ProviderError(
                "Provider returned a non-JSON response",
                kind=ProviderErrorKind.MALFORMED,
            ) from exc

        if not isinstance(data, dict):
            raise ProviderError(
                "Provider returned an unexpected payload",
                kind=ProviderErrorKind.MALFORMED,
            )
        model = data.get("model") if isinstance(data.get("model"), str) else None
        return ProviderResponse(
            text=extract_output_text(data),
            model=model,
            images=extract_generated_images(data),
        )


# ── per-provider wiring ──────────────────────────────────────────


def build_client(provider: AiProvider, settings: Settings) -> ResponsesClient:
    if provider is AiProvider.GROK:
        return ResponsesClient(
            settings.grok_base_url, settings.grok_api_key, settings.provider_timeout_seconds
        )
    return ResponsesClient(
        settings.openai_base_url, settings.openai_api_key, settings.provider_timeout_seconds
    )


def primary_choice(provider: AiProvider, settings: Settings) -> ModelChoice:
    if provider is AiProvider.GROK:
        return ModelChoice(model=settings.grok_model)
    if settings.openai_prompt_id:
        return ModelChoice(
            prompt_id=settings.openai_prompt_id,
            prompt_version=settings.openai_prompt_version or None,
        )
    return ModelChoice(model=settings.openai_model)


def degraded_choice(provider: AiProvider, settings: Settings) -> ModelChoice:
    """Fallback model without any prompt template."""
    if provider is AiProvider.GROK:
        return ModelChoice(model=settings.grok_fallback_model)
    return ModelChoice(model=settings.openai_fallback_model)


def image_generation_tool(settings: Settings, *, degraded: bool = False) -> dict[str, Any]:
    """``image_generation`` tool entry for an OpenAI request."""
    return {
        "type": "image_generation",
        "model": settings.openai_image_fallback_model if degraded else settings.openai_image_model,
        "background": settings.openai_image_background,
        "moderation": settings.openai_image_moderation,
        "output_format": settings.openai_image_output_format,
        "quality": settings.openai_image_quality,
        "size": settings.openai_image_size,
    }
