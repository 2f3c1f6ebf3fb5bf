"""Library reconciliation: move records between the session list and the durable library.

Beginner terms:
- Session list: records extracted in this run, held only in memory.
- Library: records the user saved; they survive restarts.
- Confirmation: destructive library operations ask ``confirm(message)`` first
  and do nothing when it answers False.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime

from .models import (
    ExportedPrompt,
    PromptExport,
    PromptImage,
    PromptRecord,
    PromptUpdate,
    ViewName,
)
from .storage import PromptLibraryStore, StorageError
from .workspace import SessionWorkspace

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]

SAVE_FAILED_MESSAGE = "Failed to save prompt to library."
DELETE_ONE_QUESTION = "Delete this prompt?"
CLEAR_QUESTION = "Are you sure you want to delete ALL prompts? This cannot be undone."


class LibraryError(RuntimeError):
    """A durable store operation failed; the message is safe to show to users."""


class RecordNotFoundError(KeyError):
    pass


@dataclass(frozen=True)
class ExportFile:
    filename: str
    content: bytes


class PromptLibrary:
    """Operations that touch the session list, the library store, or both."""

    def __init__(
        self,
        store: PromptLibraryStore,
        workspace: SessionWorkspace,
        *,
        confirm: Confirm,
    ) -> None:
        self.store = store
        self.workspace = workspace
        self.confirm = confirm

    def list_view(self, view: ViewName) -> list[PromptRecord]:
        if view == "library":
            return self._load_library()
        return list(self.workspace.prompts)

    def find(self, record_id: str) -> tuple[PromptRecord, ViewName]:
        """Locate a record in whichever store currently holds it."""
        record = self.workspace.get_prompt(record_id)
        if record is not None:
            return record, "extract"
        record = self._load_record(record_id)
        if record is not None:
            return record, "library"
        raise RecordNotFoundError(record_id)

    def save_to_library(self, record_id: str) -> PromptRecord:
        record = self.workspace.get_prompt(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        try:
            self.store.put(record)
        except StorageError as exc:
            logger.error("library event=save_failed record_id=%s reason=%s", record_id, exc)
            raise LibraryError(SAVE_FAILED_MESSAGE) from exc
        self.workspace.remove_prompts({record_id})
        self.workspace.deselect(record_id)
        logger.info("library event=saved record_id=%s", record_id)
        return record

    def save_selected_to_library(self) -> list[PromptRecord]:
        """Persist every selected session record, then move them all at once."""
        selected = [item for item in self.workspace.prompts if item.id in self.workspace.selection]
        written: list[str] = []
        try:
            for record in selected:
                self.store.put(record)
                written.append(record.id)
        except StorageError as exc:
            logger.error(
                "library event=bulk_save_failed written=%d total=%d reason=%s",
                len(written),
                len(selected),
                exc,
            )
            self._rollback(written)
            raise LibraryError(SAVE_FAILED_MESSAGE) from exc

        self.workspace.remove_prompts({record.id for record in selected})
        self.workspace.switch_view("library")
        logger.info("library event=bulk_saved count=%d", len(selected))
        return selected

    def delete_single(self, record_id: str, *, from_library: bool) -> bool:
        if from_library:
            if self._load_record(record_id) is None:
                raise RecordNotFoundError(record_id)
            if not self.confirm(DELETE_ONE_QUESTION):
                return False
            self._delete_from_store(record_id)
        else:
            if self.workspace.get_prompt(record_id) is None:
                raise RecordNotFoundError(record_id)
            self.workspace.remove_prompts({record_id})
        self.workspace.deselect(record_id)
        return True

    def bulk_delete(self, *, from_library: bool) -> bool:
        ids = set(self.workspace.selection)
        if not self.confirm(f"Are you sure you want to delete {len(ids)} prompts?"):
            return False
        if from_library:
            # Deselect as each delete lands so a partial failure leaves only survivors selected.
            for record_id in ids:
                self._delete_from_store(record_id)
                self.workspace.deselect(record_id)
        else:
            self.workspace.remove_prompts(ids)
        self.workspace.clear_selection()
        logger.info("library event=bulk_deleted count=%d from_library=%s", len(ids), from_library)
        return True

    def clear_library(self) -> bool:
        if not self.confirm(CLEAR_QUESTION):
            return False
        try:
            self.store.clear()
        except StorageError as exc:
            logger.error("library event=clear_failed reason=%s", exc)
            raise LibraryError("Failed to clear the library.") from exc
        if self.workspace.active_view == "library":
            self.workspace.clear_selection()
        logger.info("library event=cleared")
        return True

    def update_record(self, record_id: str, changes: PromptUpdate) -> PromptRecord:
        record, view = self.find(record_id)
        # Only the optional fields can be cleared with an explicit null.
        patch = {
            key: value
            for key, value in changes.model_dump(exclude_unset=True).items()
            if value is not None or key in ("negative_prompt", "model")
        }
        updated = PromptRecord.model_validate({**record.model_dump(), **patch})
        self._store_in(updated, view)
        return updated

    def add_image(self, record_id: str, image: PromptImage) -> PromptRecord:
        record, view = self.find(record_id)
        updated = record.model_copy(update={"images": [*record.images, image]})
        self._store_in(updated, view)
        return updated

    def remove_image(self, record_id: str, image_id: str) -> PromptRecord:
        record, view = self.find(record_id)
        remaining = [image for image in record.images if image.id != image_id]
        if len(remaining) == len(record.images):
            raise RecordNotFoundError(image_id)
        updated = record.model_copy(update={"images": remaining})
        self._store_in(updated, view)
        return updated

    def selected_records(self) -> list[PromptRecord]:
        visible = self.list_view(self.workspace.active_view)
        return [record for record in visible if record.id in self.workspace.selection]

    def _store_in(self, record: PromptRecord, view: ViewName) -> None:
        if view == "library":
            try:
                self.store.put(record)
            except StorageError as exc:
                logger.error("library event=update_failed record_id=%s reason=%s", record.id, exc)
                raise LibraryError("Failed to update prompt in library.") from exc
        else:
            self.workspace.replace_prompt(record)

    def _delete_from_store(self, record_id: str) -> None:
        try:
            self.store.delete(record_id)
        except StorageError as exc:
            logger.error("library event=delete_failed record_id=%s reason=%s", record_id, exc)
            raise LibraryError("Failed to delete prompt from library.") from exc

    def _rollback(self, record_ids: list[str]) -> None:
        for record_id in record_ids:
            try:
                self.store.delete(record_id)
            except StorageError as exc:
                logger.error("library event=rollback_failed record_id=%s reason=%s", record_id, exc)

    def _load_library(self) -> list[PromptRecord]:
        try:
            return self.store.get_all()
        except StorageError as exc:
            logger.error("library event=load_failed reason=%s", exc)
            raise LibraryError("Failed to load the library.") from exc

    def _load_record(self, record_id: str) -> PromptRecord | None:
        try:
            return self.store.get(record_id)
        except StorageError as exc:
            logger.error("library event=load_failed record_id=%s reason=%s", record_id, exc)
            raise LibraryError("Failed to load the library.") from exc


def export_to_json(
    records: list[PromptRecord],
    filename_prefix: str,
    *,
    today: date | None = None,
) -> ExportFile | None:
    """Project records onto the portable export schema; None when there is nothing to export."""
    if not records:
        return None

    export = PromptExport(
        prompts=[
            ExportedPrompt(
                name=record.title,
                prompt=record.content,
                negative_prompt=record.negative_prompt,
                images=[image.data for image in record.images],
                tags=list(record.tags),
                notes=f"Model: {record.model or 'Unknown'} | Source: {record.source}",
            )
            for record in records
        ]
    )
    payload = json.dumps(export.model_dump(exclude_none=True), indent=2, ensure_ascii=False)
    export_date = today or datetime.now(tz=UTC).date()
    return ExportFile(
        filename=f"{filename_prefix}-{export_date.isoformat()}.json",
        content=payload.encode("utf-8"),
    )


def single_export_prefix(record: PromptRecord) -> str:
    return "prompt-" + re.sub(r"\s+", "-", record.title).lower()


def view_export_prefix(view: ViewName, *, selected: bool) -> str:
    return f"prompt-miner-{view}-{'selected' if selected else 'all'}"
