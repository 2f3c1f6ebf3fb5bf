"""Extraction engine: one source in, zero or more prompt records out.

Beginner terms:
- Structured output: the backend is constrained to a JSON schema.
- Search grounding: the backend may run web searches; it cannot be combined
  with structured output, so URL sources are parsed from free text.
"""

from __future__ import annotations

import logging
from typing import Any

from .errors import NoImageProducedError, SourceTooLargeError
from .llm import GenerationRequest, GenerativeAdapter, InlinePart, TextPart
from .models import (
    FileSource,
    PromptImage,
    PromptRecord,
    SourceInput,
    TextSource,
    UrlSource,
    dedupe_tags,
)
from .repair import SourceKind, repair_and_parse

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = (
    "You are an expert AI Data Parser specialized in extracting generative AI "
    "metadata and prompts from mixed media."
)

TASK_INSTRUCTION = """
Analyze the provided content.
Identify and extract any "Generative AI Prompts" present.
A prompt is a detailed text description used to generate images or text.
Sometimes prompts are in metadata, screenshots of web UIs, or just plain text lists.

If an image is a screenshot of a prompt interface (like Civitai, Midjourney Discord), \
extract the prompt text carefully.
"""

STRUCTURED_SUFFIX = (
    "\nReturn a JSON array of the extracted prompts. "
    "If no prompts are found, return an empty array."
)

URL_SUFFIX = """
Since this is a URL, use Google Search to retrieve the context, caption, or text content \
of the page.
Look for image generation parameters, prompts, or art descriptions in the post caption \
or comments.
IMPORTANT: Return ONLY a JSON array of the extracted data. Do not include markdown \
formatting or conversational text.
"""

PROMPT_EXTRACTION_SCHEMA: dict[str, Any] = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "title": {
                "type": "STRING",
                "description": "A short, descriptive title for the prompt.",
            },
            "content": {
                "type": "STRING",
                "description": "The full generative AI prompt text found.",
            },
            "negativePrompt": {
                "type": "STRING",
                "description": "Any negative prompt text found (optional).",
            },
            "tags": {
                "type": "ARRAY",
                "items": {"type": "STRING"},
                "description": "Keywords describing the style or subject.",
            },
            "suggestedModel": {
                "type": "STRING",
                "description": (
                    "The likely AI model this prompt is for (e.g. Midjourney, Stable Diffusion)."
                ),
            },
            "imageParams": {
                "type": "STRING",
                "description": "Any parameters like --ar 16:9, steps, cfg scale found.",
            },
        },
        "required": ["title", "content", "tags"],
    },
}

BAD_REQUEST_MESSAGE = "Bad Request/File too large"
UNAVAILABLE_MESSAGE = "AI Service Unavailable"
UNKNOWN_MESSAGE = "Unknown error"
MAX_REASON_CHARS = 200


class ExtractionEngine:
    """Builds backend requests per source kind and maps answers to records."""

    def __init__(
        self,
        adapter: GenerativeAdapter,
        *,
        extraction_model: str = "gemini-2.5-flash",
        image_model: str = "gemini-2.5-flash-image",
        max_source_bytes: int | None = None,
    ) -> None:
        self.adapter = adapter
        self.extraction_model = extraction_model
        self.image_model = image_model
        self.max_source_bytes = max_source_bytes

    async def analyze(self, source: SourceInput) -> list[PromptRecord]:
        kind: SourceKind = source.kind
        logger.info("extraction event=start source=%s kind=%s", source.name, kind)
        try:
            self._check_size(source)
            request = self.build_request(source)
            response = await self.adapter.generate(request)
            entries = repair_and_parse(response.text or "[]", kind)
        except Exception:
            logger.exception("extraction event=failed source=%s kind=%s", source.name, kind)
            raise

        original_image = source.data_uri if isinstance(source, FileSource) else None
        records = [
            record
            for record in (_to_record(entry, source.name, original_image) for entry in entries)
            if record is not None
        ]
        if not records:
            logger.info("extraction event=empty source=%s kind=%s", source.name, kind)
        else:
            logger.info(
                "extraction event=completed source=%s kind=%s records=%d",
                source.name,
                kind,
                len(records),
            )
        return records

    def build_request(self, source: SourceInput) -> GenerationRequest:
        parts: list[TextPart | InlinePart] = []
        instruction = TASK_INSTRUCTION
        match source:
            case FileSource(mime_type=mime_type, data_uri=data_uri):
                parts.append(InlinePart(mime_type=mime_type, data=strip_data_uri_prefix(data_uri)))
                instruction += STRUCTURED_SUFFIX
                structured = True
            case UrlSource(url=url):
                parts.append(TextPart(text=f"Analyze the following content:\n{url}"))
                instruction += URL_SUFFIX
                structured = False
            case TextSource(text=text):
                parts.append(TextPart(text=f"Analyze the following content:\n{text}"))
                instruction += STRUCTURED_SUFFIX
                structured = True
            case _:
                raise TypeError(f"Unsupported source type: {type(source)!r}")
        parts.append(TextPart(text=instruction))

        if structured:
            return GenerationRequest(
                model=self.extraction_model,
                parts=parts,
                system_instruction=SYSTEM_INSTRUCTION,
                response_mime_type="application/json",
                response_schema=PROMPT_EXTRACTION_SCHEMA,
            )
        return GenerationRequest(
            model=self.extraction_model,
            parts=parts,
            system_instruction=SYSTEM_INSTRUCTION,
            use_search=True,
        )

    def _check_size(self, source: SourceInput) -> None:
        if self.max_source_bytes is None or not isinstance(source, FileSource):
            return
        size = decoded_size(strip_data_uri_prefix(source.data_uri))
        if size > self.max_source_bytes:
            raise SourceTooLargeError(source.name, size, self.max_source_bytes)

    async def generate_sample_image(self, prompt_text: str) -> PromptImage:
        if not prompt_text.strip():
            raise ValueError("prompt_text must be non-empty")
        request = GenerationRequest(
            model=self.image_model,
            parts=[TextPart(text=f"Generate an image based on this prompt: {prompt_text}")],
            response_modalities=["IMAGE", "TEXT"],
        )
        response = await self.adapter.generate(request)
        if not response.images:
            logger.warning("sample_image event=no_image model=%s", self.image_model)
            raise NoImageProducedError("No image data found in response")
        image = response.images[0]
        return PromptImage(
            data=f"data:{image.mime_type};base64,{image.data}",
            mime_type=image.mime_type,
            is_generated=True,
        )


def strip_data_uri_prefix(data_uri: str) -> str:
    _, sep, payload = data_uri.partition(",")
    return payload if sep else data_uri


def decoded_size(payload: str) -> int:
    """Byte length of a base64 payload without decoding it."""
    stripped = payload.strip()
    return len(stripped) * 3 // 4 - stripped[-2:].count("=")


def classify_failure(exc: BaseException) -> str:
    """Map an extraction failure to the short message shown on its task."""
    status_code = getattr(exc, "status_code", None)
    text = str(exc)
    reason = text.strip()[:MAX_REASON_CHARS] or UNKNOWN_MESSAGE
    if status_code == 400 or "400" in text:
        reason = BAD_REQUEST_MESSAGE
    if status_code == 503 or "503" in text:
        reason = UNAVAILABLE_MESSAGE
    return reason


def _to_record(
    entry: dict[str, Any], source_name: str, original_image: str | None
) -> PromptRecord | None:
    content = entry.get("content")
    if not isinstance(content, str):
        logger.info("extraction event=skipped_entry source=%s reason=no_content", source_name)
        return None

    title = entry.get("title")
    if not isinstance(title, str) or not title.strip():
        title = f"Prompt from {source_name}"

    raw_tags = entry.get("tags")
    tags = [tag for tag in raw_tags if isinstance(tag, str)] if isinstance(raw_tags, list) else []

    negative_prompt = entry.get("negativePrompt")
    model = entry.get("suggestedModel")
    return PromptRecord(
        title=title,
        content=content,
        negative_prompt=negative_prompt if isinstance(negative_prompt, str) else None,
        model=model if isinstance(model, str) else None,
        tags=dedupe_tags(tags),
        source=source_name,
        images=[],
        original_source_image=original_image,
    )
