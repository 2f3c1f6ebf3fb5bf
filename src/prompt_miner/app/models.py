"""Pydantic models shared across extraction, orchestration, storage, and the API.

Beginner terms used in this file:
- Data URI: an inline payload such as ``data:image/png;base64,iVBOR...``.
- Discriminated union: several models told apart by one literal field (``kind``).
- Session list: extracted records not yet saved to the durable library.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator

# Task lifecycle states, in the only order they may be visited.
TaskState = Literal["pending", "processing", "success", "error"]

# The two views a user can work in; selection is scoped to one of them.
ViewName = Literal["extract", "library"]

SHARE_ENVELOPE_ID = "latest-share"


def new_id() -> str:
    return str(uuid.uuid4())


def dedupe_tags(tags: list[str]) -> list[str]:
    """Drop blanks and repeats while keeping first-seen order."""
    seen: set[str] = set()
    ordered: list[str] = []
    for tag in tags:
        cleaned = tag.strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        ordered.append(cleaned)
    return ordered


class PromptImage(BaseModel):
    """Image attached to exactly one prompt record."""

    id: str = Field(default_factory=new_id)
    data: str
    mime_type: str
    is_generated: bool = False


class PromptRecord(BaseModel):
    """One extracted generative-AI prompt with its metadata."""

    id: str = Field(default_factory=new_id)
    title: str
    # May be empty while a user is editing; extraction only yields what the model returned.
    content: str
    negative_prompt: str | None = None
    # Free-text label of the inferred generator, e.g. "Midjourney".
    model: str | None = None
    images: list[PromptImage] = Field(default_factory=list)
    source: str
    tags: list[str] = Field(default_factory=list)
    # Full data URI of the uploaded file, kept so it can be cropped later.
    original_source_image: str | None = None

    @field_validator("tags")
    @classmethod
    def _tags_are_set_like(cls, value: list[str]) -> list[str]:
        return dedupe_tags(value)


class PromptUpdate(BaseModel):
    """Partial edit of a record; unset fields stay unchanged."""

    title: str | None = None
    content: str | None = None
    negative_prompt: str | None = None
    model: str | None = None
    tags: list[str] | None = None
    images: list[PromptImage] | None = None


class TaskStatus(BaseModel):
    """Progress of one submitted source."""

    id: str = Field(default_factory=new_id)
    name: str
    status: TaskState = "pending"
    message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("success", "error")


class FileSource(BaseModel):
    kind: Literal["file"] = "file"
    name: str
    mime_type: str
    data_uri: str


class UrlSource(BaseModel):
    kind: Literal["url"] = "url"
    name: str
    url: str


class TextSource(BaseModel):
    kind: Literal["text"] = "text"
    name: str
    text: str


SourceInput = Annotated[FileSource | UrlSource | TextSource, Field(discriminator="kind")]

TEXT_SOURCE_NAME = "Text/URL Input"


def source_from_text(text: str, name: str = TEXT_SOURCE_NAME) -> UrlSource | TextSource:
    """Classify a free-form text field as a URL or plain text source."""
    stripped = text.strip()
    if stripped.startswith(("http://", "https://")):
        return UrlSource(name=name, url=stripped)
    return TextSource(name=name, text=text)


class SharedFile(BaseModel):
    name: str
    mime_type: str
    data: str


class SharedContentEnvelope(BaseModel):
    """The single pending share handed from the intercept endpoint to the app."""

    id: Literal["latest-share"] = SHARE_ENVELOPE_ID
    # Epoch milliseconds at write time.
    timestamp: int
    text: str | None = None
    title: str | None = None
    file: SharedFile | None = None


class ExportedPrompt(BaseModel):
    """One entry of the portable export schema."""

    name: str
    prompt: str
    negative_prompt: str | None = None
    images: list[str] | None = None
    tags: list[str] | None = None
    notes: str


class PromptExport(BaseModel):
    prompts: list[ExportedPrompt] = Field(default_factory=list)


class CropBox(BaseModel):
    """Pixel box on the original source image: left/top inclusive, right/bottom exclusive."""

    left: int = Field(ge=0)
    top: int = Field(ge=0)
    right: int = Field(gt=0)
    bottom: int = Field(gt=0)


class SampleImageRequest(BaseModel):
    # Defaults to the record's own content when omitted.
    prompt: str | None = None


class ViewRequest(BaseModel):
    view: ViewName


class SelectionToggleRequest(BaseModel):
    id: str = Field(min_length=1)


class SelectionResponse(BaseModel):
    view: ViewName
    ids: list[str]


class TaskQueueResponse(BaseModel):
    tasks: list[TaskStatus]
    is_processing: bool


class BatchResponse(BaseModel):
    batch_id: str
    tasks: list[TaskStatus]
    done: bool
