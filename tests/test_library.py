from __future__ import annotations

import json
from datetime import date

import pytest

from prompt_miner.app.library import (
    CLEAR_QUESTION,
    LibraryError,
    PromptLibrary,
    RecordNotFoundError,
    export_to_json,
    single_export_prefix,
    view_export_prefix,
)
from prompt_miner.app.models import PromptImage, PromptRecord, PromptUpdate
from prompt_miner.app.storage import InMemoryCollectionStore, PromptLibraryStore, StorageError
from prompt_miner.app.workspace import SessionWorkspace


class FlakyCollection(InMemoryCollectionStore):
    """Fails every put after ``fail_after`` successful ones."""

    def __init__(self, fail_after: int) -> None:
        super().__init__("prompts")
        self.fail_after = fail_after

    def put(self, key: str, value: dict) -> None:
        if self.fail_after <= 0:
            raise StorageError("disk full")
        self.fail_after -= 1
        super().put(key, value)


class FailingDeleteCollection(InMemoryCollectionStore):
    """Raises on the n-th delete call; earlier deletes succeed."""

    def __init__(self, fail_on_call: int) -> None:
        super().__init__("prompts")
        self.fail_on_call = fail_on_call
        self.delete_calls = 0

    def delete(self, key: str) -> None:
        self.delete_calls += 1
        if self.delete_calls == self.fail_on_call:
            raise StorageError("database is locked")
        super().delete(key)


def _record(title: str, **kwargs) -> PromptRecord:
    return PromptRecord(title=title, content=f"{title} content", source="notes.txt", **kwargs)


def _setup(
    records: list[PromptRecord],
    *,
    answers: list[bool] | None = None,
    collection: InMemoryCollectionStore | None = None,
) -> tuple[PromptLibrary, PromptLibraryStore, SessionWorkspace, list[str]]:
    store = PromptLibraryStore(collection or InMemoryCollectionStore("prompts"))
    workspace = SessionWorkspace()
    workspace.prepend_prompts(records)
    questions: list[str] = []
    replies = list(answers or [])

    def confirm(question: str) -> bool:
        questions.append(question)
        return replies.pop(0) if replies else True

    return PromptLibrary(store, workspace, confirm=confirm), store, workspace, questions


def test_save_moves_record_from_session_to_library() -> None:
    record = _record("Cat")
    library, store, workspace, _ = _setup([record])
    workspace.toggle_selection(record.id)

    library.save_to_library(record.id)

    assert workspace.prompts == []
    assert record.id not in workspace.selection
    assert store.get(record.id) == record


def test_deleting_saved_record_leaves_session_untouched() -> None:
    saved = _record("Saved")
    kept = _record("Kept")
    library, store, workspace, questions = _setup([saved, kept])
    library.save_to_library(saved.id)

    assert library.delete_single(saved.id, from_library=True) is True

    assert store.get_all() == []
    assert [record.id for record in workspace.prompts] == [kept.id]
    assert questions == ["Delete this prompt?"]


def test_save_failure_leaves_session_untouched() -> None:
    record = _record("Cat")
    library, store, workspace, _ = _setup([record], collection=FlakyCollection(fail_after=0))

    with pytest.raises(LibraryError, match="Failed to save prompt to library."):
        library.save_to_library(record.id)

    assert workspace.prompts == [record]
    assert store.get_all() == []


def test_save_unknown_record_raises_not_found() -> None:
    library, *_ = _setup([])
    with pytest.raises(RecordNotFoundError):
        library.save_to_library("missing")


def test_bulk_save_moves_selection_and_switches_view() -> None:
    first, second, other = _record("First"), _record("Second"), _record("Other")
    library, store, workspace, _ = _setup([first, second, other])
    workspace.toggle_selection(first.id)
    workspace.toggle_selection(second.id)

    saved = library.save_selected_to_library()

    assert {record.id for record in saved} == {first.id, second.id}
    assert [record.id for record in workspace.prompts] == [other.id]
    assert workspace.active_view == "library"
    assert workspace.selection == set()
    assert {record.id for record in store.get_all()} == {first.id, second.id}


def test_bulk_save_failure_rolls_back_written_records() -> None:
    first, second = _record("First"), _record("Second")
    library, store, workspace, _ = _setup([first, second], collection=FlakyCollection(fail_after=1))
    workspace.toggle_selection(first.id)
    workspace.toggle_selection(second.id)

    with pytest.raises(LibraryError):
        library.save_selected_to_library()

    assert store.get_all() == []
    assert len(workspace.prompts) == 2
    assert workspace.selection == {first.id, second.id}
    assert workspace.active_view == "extract"


def test_declined_confirmation_changes_nothing() -> None:
    record = _record("Saved")
    session_record = _record("Session")
    library, store, workspace, _ = _setup([record, session_record], answers=[False, False, False])
    library.save_to_library(record.id)
    workspace.toggle_selection(session_record.id)

    assert library.delete_single(record.id, from_library=True) is False
    assert library.bulk_delete(from_library=False) is False
    assert library.clear_library() is False

    assert store.get(record.id) == record
    assert workspace.prompts == [session_record]
    assert workspace.selection == {session_record.id}


def test_bulk_delete_asks_with_count_and_clears_selection() -> None:
    records = [_record(f"R{index}") for index in range(3)]
    library, _, workspace, questions = _setup(records)
    workspace.toggle_selection(records[0].id)
    workspace.toggle_selection(records[1].id)

    assert library.bulk_delete(from_library=False) is True

    assert questions == ["Are you sure you want to delete 2 prompts?"]
    assert [record.id for record in workspace.prompts] == [records[2].id]
    assert workspace.selection == set()


def test_bulk_delete_from_library() -> None:
    first, second = _record("First"), _record("Second")
    library, store, workspace, _ = _setup([first, second])
    library.save_to_library(first.id)
    library.save_to_library(second.id)
    workspace.switch_view("library")
    workspace.toggle_selection(first.id)

    assert library.bulk_delete(from_library=True) is True

    assert [record.id for record in store.get_all()] == [second.id]


def test_clear_library_asks_the_clear_question() -> None:
    record = _record("Saved")
    library, store, _, questions = _setup([record])
    library.save_to_library(record.id)

    assert library.clear_library() is True

    assert questions == [CLEAR_QUESTION]
    assert store.get_all() == []


def test_update_record_in_session_and_library() -> None:
    session_record = _record("Session", model="Midjourney")
    library_record = _record("Library")
    library, store, workspace, _ = _setup([session_record, library_record])
    library.save_to_library(library_record.id)

    updated = library.update_record(
        session_record.id, PromptUpdate(title="Renamed", tags=["x", "x", "y"], model=None)
    )
    assert updated.title == "Renamed"
    assert updated.tags == ["x", "y"]
    assert updated.model is None
    assert workspace.get_prompt(session_record.id) == updated

    library.update_record(library_record.id, PromptUpdate(content="new content"))
    assert store.get(library_record.id).content == "new content"


def test_update_ignores_null_for_required_fields() -> None:
    record = _record("Keep")
    library, *_ = _setup([record])
    updated = library.update_record(record.id, PromptUpdate(title=None))
    assert updated.title == "Keep"


def test_add_and_remove_image() -> None:
    record = _record("Cat")
    library, _, workspace, _ = _setup([record])
    image = PromptImage(data="data:image/png;base64,AAAA", mime_type="image/png")

    library.add_image(record.id, image)
    assert workspace.get_prompt(record.id).images == [image]

    library.remove_image(record.id, image.id)
    assert workspace.get_prompt(record.id).images == []
    with pytest.raises(RecordNotFoundError):
        library.remove_image(record.id, image.id)


def test_export_maps_fields_and_skips_absent_negative_prompt() -> None:
    image = PromptImage(data="data:image/png;base64,AAAA", mime_type="image/png")
    with_negative = _record("Cat Astronaut", negative_prompt="blurry", model="Midjourney", images=[image], tags=["space"])
    without_negative = _record("Plain")

    export = export_to_json([with_negative, without_negative], "prompt-miner-extract-all", today=date(2024, 5, 1))

    assert export is not None
    assert export.filename == "prompt-miner-extract-all-2024-05-01.json"
    payload = json.loads(export.content)
    assert payload["prompts"][0] == {
        "name": "Cat Astronaut",
        "prompt": "Cat Astronaut content",
        "negative_prompt": "blurry",
        "images": ["data:image/png;base64,AAAA"],
        "tags": ["space"],
        "notes": "Model: Midjourney | Source: notes.txt",
    }
    assert "negative_prompt" not in payload["prompts"][1]
    assert payload["prompts"][1]["notes"] == "Model: Unknown | Source: notes.txt"


def test_export_is_idempotent_and_does_not_mutate_records() -> None:
    record = _record("Cat", tags=["a"])
    before = record.model_copy(deep=True)

    first = export_to_json([record], "p", today=date(2024, 1, 1))
    second = export_to_json([record], "p", today=date(2024, 1, 1))

    assert first == second
    assert record == before


def test_export_of_nothing_is_none() -> None:
    assert export_to_json([], "prompt-miner-library-selected") is None


def test_export_prefixes() -> None:
    assert single_export_prefix(_record("Cat  Astronaut\tHD")) == "prompt-cat-astronaut-hd"
    assert view_export_prefix("library", selected=True) == "prompt-miner-library-selected"
    assert view_export_prefix("extract", selected=False) == "prompt-miner-extract-all"


def test_partial_bulk_delete_failure_keeps_selection_in_step_with_library() -> None:
    records = [_record(f"R{index}") for index in range(3)]
    library, store, workspace, _ = _setup(records, collection=FailingDeleteCollection(fail_on_call=2))
    for record in records:
        library.save_to_library(record.id)
    workspace.switch_view("library")
    for record in records:
        workspace.toggle_selection(record.id)

    with pytest.raises(LibraryError, match="Failed to delete prompt from library."):
        library.bulk_delete(from_library=True)

    remaining = {record.id for record in store.get_all()}
    assert len(remaining) == 2
    assert workspace.selection == remaining
