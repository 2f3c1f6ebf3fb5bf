"""Fan a batch of sources out to concurrent extractions and fold their progress.

Beginner terms:
- Batch: every source submitted together (N files plus an optional text field).
- Event sink: one queue per batch; source tasks only emit events into it and
  a single consumer applies them to the shared workspace.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, Literal

from .extraction import ExtractionEngine, classify_failure
from .models import (
    FileSource,
    PromptRecord,
    SourceInput,
    TaskStatus,
    new_id,
    source_from_text,
)
from .workspace import SessionWorkspace

logger = logging.getLogger(__name__)

EventKind = Literal["started", "succeeded", "failed"]

CANCELLED_MESSAGE = "Cancelled"


@dataclass(frozen=True)
class TaskEvent:
    task_id: str
    kind: EventKind
    records: tuple[PromptRecord, ...] = ()
    reason: str | None = None


class ExtractionBatch:
    """Handle for one submitted batch; completion is counted, not awaited up front."""

    def __init__(self, tasks: list[TaskStatus]) -> None:
        self.id = new_id()
        self.tasks = tasks
        self.completed = 0
        self.events: asyncio.Queue[TaskEvent] = asyncio.Queue()
        self._done = asyncio.Event()

    @property
    def size(self) -> int:
        return len(self.tasks)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> None:
        await self._done.wait()

    def mark_done(self) -> None:
        self._done.set()

    def task(self, task_id: str) -> TaskStatus | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


class TaskOrchestrator:
    """Runs one extraction per source without serialising them."""

    def __init__(self, engine: ExtractionEngine, workspace: SessionWorkspace) -> None:
        self.engine = engine
        self.workspace = workspace
        self._background: set[asyncio.Task[Any]] = set()

    @staticmethod
    def plan_sources(files: list[FileSource], text: str) -> list[SourceInput]:
        """One source per file, plus one for the text field when it is not blank."""
        sources: list[SourceInput] = list(files)
        if text.strip():
            sources.append(source_from_text(text))
        return sources

    def submit(self, sources: list[SourceInput]) -> ExtractionBatch | None:
        """Start every source concurrently and return immediately.

        Must be called from inside a running event loop.
        """
        if not sources:
            return None

        tasks = [TaskStatus(name=source.name) for source in sources]
        batch = ExtractionBatch(tasks)
        self.workspace.add_tasks(tasks)
        if self.workspace.active_view != "extract":
            self.workspace.switch_view("extract")
        self.workspace.open_batches += 1
        logger.info("batch event=submitted batch_id=%s size=%d", batch.id, batch.size)

        self._spawn(self._consume(batch))
        for task, source in zip(tasks, sources):
            self._spawn(self._run_source(batch, task.id, source))
        return batch

    async def process(self, sources: list[SourceInput]) -> ExtractionBatch | None:
        """Submit and wait for every task of the batch to settle."""
        batch = self.submit(sources)
        if batch is not None:
            await batch.wait()
        return batch

    async def _run_source(self, batch: ExtractionBatch, task_id: str, source: SourceInput) -> None:
        batch.events.put_nowait(TaskEvent(task_id=task_id, kind="started"))
        try:
            records = await self.engine.analyze(source)
        except asyncio.CancelledError:
            # The consumer counts terminal events; a cancelled source must still settle.
            batch.events.put_nowait(
                TaskEvent(task_id=task_id, kind="failed", reason=CANCELLED_MESSAGE)
            )
            raise
        except Exception as exc:  # noqa: BLE001
            batch.events.put_nowait(
                TaskEvent(task_id=task_id, kind="failed", reason=classify_failure(exc))
            )
            return
        batch.events.put_nowait(
            TaskEvent(task_id=task_id, kind="succeeded", records=tuple(records))
        )

    async def _consume(self, batch: ExtractionBatch) -> None:
        try:
            while batch.completed < batch.size:
                event = await batch.events.get()
                self._apply(batch, event)
        finally:
            self.workspace.open_batches -= 1
            batch.mark_done()
        logger.info("batch event=completed batch_id=%s size=%d", batch.id, batch.size)

    def _apply(self, batch: ExtractionBatch, event: TaskEvent) -> None:
        task = batch.task(event.task_id)
        if task is None or task.is_terminal:
            return

        if event.kind == "started":
            task.status = "processing"
            return

        if event.kind == "succeeded":
            if event.records:
                self.workspace.prepend_prompts(list(event.records))
                task.message = f"Found {len(event.records)} prompt(s)"
            else:
                task.message = "No prompts found"
            task.status = "success"
        else:
            task.status = "error"
            task.message = event.reason
            logger.warning(
                "task event=failed batch_id=%s task=%s reason=%s",
                batch.id,
                task.name,
                event.reason,
            )
        batch.completed += 1

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        background = asyncio.create_task(coro)
        self._background.add(background)
        background.add_done_callback(self._background.discard)
