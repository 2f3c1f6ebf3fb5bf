from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .errors import BackendError
from .settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class InlinePart:
    mime_type: str
    # Base64 payload without any data-URI prefix.
    data: str


@dataclass(frozen=True)
class GenerationRequest:
    model: str
    parts: list[TextPart | InlinePart]
    system_instruction: str | None = None
    response_mime_type: str | None = None
    response_schema: dict[str, Any] | None = None
    # Search grounding and response_schema cannot be combined on the backend.
    use_search: bool = False
    response_modalities: list[str] | None = None


@dataclass(frozen=True)
class InlineImage:
    mime_type: str
    data: str


@dataclass(frozen=True)
class GenerationResponse:
    text: str = ""
    images: list[InlineImage] = field(default_factory=list)


class GenerativeAdapter(Protocol):
    """Interface for multimodal content generation."""

    async def generate(self, request: GenerationRequest) -> GenerationResponse: ...


class GeminiAdapter:
    """Gemini adapter on top of the google-genai async client."""

    def __init__(self, *, api_key: str = "", client: genai.Client | None = None) -> None:
        if client is None and not api_key:
            raise RuntimeError("GEMINI_API_KEY is missing")
        self._client = client or genai.Client(api_key=api_key)

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        contents = types.Content(role="user", parts=[_to_part(part) for part in request.parts])
        config = _build_config(request)
        if _trace_enabled():
            logger.warning(
                "LLM trace request provider=gemini model=%s parts=%d search=%s",
                request.model,
                len(request.parts),
                request.use_search,
            )
        try:
            response = await self._client.aio.models.generate_content(
                model=request.model,
                contents=contents,
                config=config,
            )
        except genai_errors.APIError as exc:
            logger.warning(
                "Gemini request failed model=%s code=%s reason=%s",
                request.model,
                exc.code,
                exc.message,
            )
            raise BackendError(exc.code, exc.message or str(exc)) from exc
        if _trace_enabled():
            logger.warning("LLM trace response provider=gemini model=%s status=ok", request.model)
        return _to_generation_response(response)


def build_adapter_from_settings(settings: Settings) -> GenerativeAdapter | None:
    api_key = settings.resolved_gemini_api_key()
    if not api_key:
        return None
    return GeminiAdapter(api_key=api_key)


def _to_part(part: TextPart | InlinePart) -> types.Part:
    if isinstance(part, TextPart):
        return types.Part.from_text(text=part.text)
    try:
        raw = base64.b64decode(part.data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise BackendError(400, "Inline payload is not valid base64") from exc
    return types.Part.from_bytes(data=raw, mime_type=part.mime_type)


def _build_config(request: GenerationRequest) -> types.GenerateContentConfig:
    params: dict[str, Any] = {}
    if request.system_instruction:
        params["system_instruction"] = request.system_instruction
    if request.use_search:
        params["tools"] = [types.Tool(google_search=types.GoogleSearch())]
    else:
        if request.response_mime_type:
            params["response_mime_type"] = request.response_mime_type
        if request.response_schema is not None:
            params["response_schema"] = request.response_schema
    if request.response_modalities:
        params["response_modalities"] = list(request.response_modalities)
    return types.GenerateContentConfig(**params)


def _to_generation_response(response: Any) -> GenerationResponse:
    candidates = getattr(response, "candidates", None) or []
    content = getattr(candidates[0], "content", None) if candidates else None
    parts = getattr(content, "parts", None) or []

    text_segments: list[str] = []
    images: list[InlineImage] = []
    for part in parts:
        if getattr(part, "thought", False):
            continue
        text = getattr(part, "text", None)
        if isinstance(text, str) and text:
            text_segments.append(text)
        inline = getattr(part, "inline_data", None)
        if inline is not None and inline.data:
            data = inline.data
            if isinstance(data, bytes):
                data = base64.b64encode(data).decode("ascii")
            images.append(InlineImage(mime_type=inline.mime_type or "image/png", data=data))
    return GenerationResponse(text="".join(text_segments), images=images)


def _trace_enabled() -> bool:
    return os.getenv("PROMPT_MINER_LLM_TRACE", "0").strip() == "1"
