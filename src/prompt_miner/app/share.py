"""Share-target handoff: park one shared payload and hand it to the app exactly once.

Beginner terms:
- Share target: the OS "share to app" action, delivered as a multipart POST.
- Envelope: the single pending payload stored under the fixed key ``latest-share``.
- 303 See Other: redirect that makes the browser follow up with a GET.
"""

from __future__ import annotations

import base64
import logging
import mimetypes
import time
from typing import Any

from fastapi import Request
from fastapi.responses import RedirectResponse
from starlette.datastructures import UploadFile

from .models import SHARE_ENVELOPE_ID, SharedContentEnvelope, SharedFile
from .storage import CollectionStore

logger = logging.getLogger(__name__)

SHARE_SUCCESS_URL = "/?shared=true"
SHARE_FAILURE_URL = "/?error=share_failed"


class ShareHandoffStore:
    """Holds at most one envelope; a new write replaces the pending one."""

    STORE_NAME = "shared-content"

    def __init__(self, collection: CollectionStore) -> None:
        self.collection = collection

    def write(self, envelope: SharedContentEnvelope) -> None:
        self.collection.put(SHARE_ENVELOPE_ID, envelope.model_dump(mode="json"))

    def peek(self) -> SharedContentEnvelope | None:
        raw = self.collection.get(SHARE_ENVELOPE_ID)
        return SharedContentEnvelope.model_validate(raw) if raw is not None else None

    def consume(self) -> SharedContentEnvelope | None:
        """Read and delete the pending envelope; a second call returns None."""
        raw = self.collection.take(SHARE_ENVELOPE_ID)
        if raw is None:
            return None
        logger.info("share event=consumed")
        return SharedContentEnvelope.model_validate(raw)


def build_envelope(
    *,
    text: str | None,
    url: str | None,
    title: str | None,
    file: SharedFile | None,
    timestamp_ms: int | None = None,
) -> SharedContentEnvelope:
    """Fold text and url into one text field; the envelope never carries both."""
    shared_text = text or ""
    if url:
        shared_text = f"{shared_text}\n{url}" if shared_text else url
    return SharedContentEnvelope(
        timestamp=timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
        text=shared_text or None,
        title=title or None,
        file=file,
    )


async def handle_share_submission(request: Request, store: ShareHandoffStore) -> RedirectResponse:
    """Persist the shared form and redirect into the app; every path ends in a redirect."""
    try:
        form = await request.form()
        envelope = build_envelope(
            text=_form_text(form.get("text")),
            url=_form_text(form.get("url")),
            title=_form_text(form.get("title")),
            file=await _form_file(form.get("file")),
        )
        store.write(envelope)
    except Exception:  # noqa: BLE001
        logger.exception("share event=failed")
        return RedirectResponse(SHARE_FAILURE_URL, status_code=303)

    logger.info(
        "share event=stored has_text=%s has_file=%s",
        envelope.text is not None,
        envelope.file is not None,
    )
    return RedirectResponse(SHARE_SUCCESS_URL, status_code=303)


def to_data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def _form_text(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


async def _form_file(value: Any) -> SharedFile | None:
    if not isinstance(value, UploadFile) or not value.filename:
        return None
    data = await value.read()
    if not data:
        return None
    mime_type = (
        value.content_type
        or mimetypes.guess_type(value.filename)[0]
        or "application/octet-stream"
    )
    return SharedFile(name=value.filename, mime_type=mime_type, data=to_data_uri(data, mime_type))
