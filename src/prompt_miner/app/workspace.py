"""In-memory session state: extracted records, task queue, view, and selection."""

from __future__ import annotations

from .models import PromptRecord, TaskStatus, ViewName


class SessionWorkspace:
    """State owned by the running app instance; never persisted.

    All mutation happens on the event loop (request handlers or the
    orchestrator's event consumer), so no locking is needed.
    """

    def __init__(self) -> None:
        # Newest extraction first.
        self.prompts: list[PromptRecord] = []
        # Newest batch first; submission order within a batch.
        self.tasks: list[TaskStatus] = []
        self.selection: set[str] = set()
        self.active_view: ViewName = "extract"
        self.open_batches = 0

    @property
    def is_processing(self) -> bool:
        return self.open_batches > 0

    def get_prompt(self, record_id: str) -> PromptRecord | None:
        for record in self.prompts:
            if record.id == record_id:
                return record
        return None

    def prepend_prompts(self, records: list[PromptRecord]) -> None:
        self.prompts = [*records, *self.prompts]

    def replace_prompt(self, record: PromptRecord) -> None:
        self.prompts = [record if item.id == record.id else item for item in self.prompts]

    def remove_prompts(self, record_ids: set[str]) -> None:
        self.prompts = [item for item in self.prompts if item.id not in record_ids]

    def add_tasks(self, tasks: list[TaskStatus]) -> None:
        self.tasks = [*tasks, *self.tasks]

    def get_task(self, task_id: str) -> TaskStatus | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def clear_finished_tasks(self) -> int:
        before = len(self.tasks)
        self.tasks = [task for task in self.tasks if not task.is_terminal]
        return before - len(self.tasks)

    def switch_view(self, view: ViewName) -> None:
        # Selection never spans both views.
        self.active_view = view
        self.selection = set()

    def toggle_selection(self, record_id: str) -> None:
        if record_id in self.selection:
            self.selection.discard(record_id)
        else:
            self.selection.add(record_id)

    def toggle_select_all(self, visible_ids: list[str]) -> None:
        if visible_ids and len(self.selection) == len(visible_ids):
            self.selection = set()
        else:
            self.selection = set(visible_ids)

    def deselect(self, record_id: str) -> None:
        self.selection.discard(record_id)

    def clear_selection(self) -> None:
        self.selection = set()
