"""FastAPI application wiring for the prompt extraction service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- app.state: shared runtime objects (workspace, stores, engine, orchestrator).
- confirm flag: destructive library routes only act when ``?confirm=true`` is sent;
  without it they answer 409 and change nothing.
- Session list vs. library: unsaved extraction results vs. durably saved records.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from urllib.parse import quote

from fastapi import Body, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from .app.errors import ExtractionError
from .app.extraction import UNAVAILABLE_MESSAGE, ExtractionEngine
from .app.imaging import CropError, crop_source_image
from .app.library import (
    ExportFile,
    LibraryError,
    PromptLibrary,
    RecordNotFoundError,
    export_to_json,
    single_export_prefix,
    view_export_prefix,
)
from .app.llm import GenerativeAdapter, build_adapter_from_settings
from .app.models import (
    BatchResponse,
    CropBox,
    FileSource,
    PromptRecord,
    PromptUpdate,
    SampleImageRequest,
    SelectionResponse,
    SelectionToggleRequest,
    TaskQueueResponse,
    ViewName,
    ViewRequest,
)
from .app.orchestrator import TaskOrchestrator
from .app.settings import Settings, get_settings
from .app.share import ShareHandoffStore, handle_share_submission, to_data_uri
from .app.storage import (
    CollectionStore,
    PromptLibraryStore,
    SqliteCollectionStore,
    StorageError,
)
from .app.ui import render_homepage
from .app.workspace import SessionWorkspace

logger = logging.getLogger(__name__)

CONFIRMATION_REQUIRED = "Confirmation required"
SAMPLE_IMAGE_FAILED = "Failed to generate sample image."

_logging_configured = False


def configure_logging(level: str) -> None:
    """Apply the root logging format once per process."""
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    _logging_configured = True


def create_app(
    *,
    settings_override: Settings | None = None,
    adapter: GenerativeAdapter | None = None,
    library_collection: CollectionStore | None = None,
    share_collection: CollectionStore | None = None,
) -> FastAPI:
    """Application factory.

    Tests pass a stub adapter and in-memory collections; production reads
    everything from Settings. A missing API key does not fail startup: the
    extraction routes answer 503 until one is configured.
    """
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)

    if adapter is None:
        adapter = build_adapter_from_settings(settings)
    if adapter is None:
        logger.warning("startup event=no_backend reason=missing_gemini_api_key")

    workspace = SessionWorkspace()
    engine = (
        ExtractionEngine(
            adapter,
            extraction_model=settings.extraction_model,
            image_model=settings.image_model,
            max_source_bytes=settings.max_upload_bytes,
        )
        if adapter is not None
        else None
    )

    if library_collection is None:
        library_collection = SqliteCollectionStore(
            settings.library_db_path, PromptLibraryStore.STORE_NAME
        )
    if share_collection is None:
        share_collection = SqliteCollectionStore(
            settings.share_db_path, ShareHandoffStore.STORE_NAME
        )

    app = FastAPI(title=settings.app_name, version="0.1.0")
    # Shared objects live in app.state so route handlers and tests can reach them.
    app.state.settings = settings
    app.state.workspace = workspace
    app.state.engine = engine
    app.state.orchestrator = TaskOrchestrator(engine, workspace) if engine is not None else None
    app.state.library_store = PromptLibraryStore(library_collection)
    app.state.share_store = ShareHandoffStore(share_collection)

    # Routes that touch the workspace are async so it is only mutated on the event loop.
    def library(confirm: bool = False) -> PromptLibrary:
        return PromptLibrary(
            app.state.library_store,
            app.state.workspace,
            confirm=lambda _question: confirm,
        )

    def require_engine() -> ExtractionEngine:
        if app.state.engine is None:
            raise HTTPException(status_code=503, detail=UNAVAILABLE_MESSAGE)
        return app.state.engine

    def selection_response() -> SelectionResponse:
        with _library_errors():
            ids = [record.id for record in library().selected_records()]
        return SelectionResponse(view=app.state.workspace.active_view, ids=ids)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/", response_class=HTMLResponse)
    async def home(shared: bool = False, error: str | None = None) -> str:
        if error == "share_failed":
            return render_homepage(app_name=settings.app_name, share_failed=True, clear_query=True)
        if not shared:
            return render_homepage(app_name=settings.app_name)

        try:
            envelope = app.state.share_store.consume()
        except StorageError:
            logger.exception("share event=consume_failed")
            return render_homepage(app_name=settings.app_name, share_failed=True, clear_query=True)

        app.state.workspace.switch_view("extract")
        if envelope is None:
            return render_homepage(app_name=settings.app_name, clear_query=True)
        return render_homepage(
            app_name=settings.app_name,
            initial_text=envelope.text or "",
            shared_file=envelope.file,
            clear_query=True,
        )

    @app.post("/share-target")
    async def share_target(request: Request) -> RedirectResponse:
        return await handle_share_submission(request, app.state.share_store)

    @app.post("/api/share/consume")
    def consume_share() -> Response:
        try:
            envelope = app.state.share_store.consume()
        except StorageError as exc:
            raise HTTPException(status_code=500, detail="Failed to read shared content.") from exc
        if envelope is None:
            return Response(status_code=204)
        return JSONResponse(envelope.model_dump(mode="json"))

    @app.post("/api/extractions", response_model=BatchResponse)
    async def create_extraction(
        text: str = Form(default=""),
        files: list[UploadFile] | None = File(default=None),
        wait: bool = False,
    ) -> BatchResponse:
        require_engine()
        file_sources: list[FileSource] = []
        for upload in files or []:
            if not upload.content_type:
                logger.info("extraction event=skipped_upload name=%s reason=no_type", upload.filename)
                continue
            data = await upload.read()
            file_sources.append(
                FileSource(
                    name=upload.filename or "upload",
                    mime_type=upload.content_type,
                    data_uri=to_data_uri(data, upload.content_type),
                )
            )

        sources = TaskOrchestrator.plan_sources(file_sources, text)
        batch = app.state.orchestrator.submit(sources)
        if batch is None:
            raise HTTPException(status_code=400, detail="Nothing to extract")
        if wait:
            await batch.wait()
        return BatchResponse(batch_id=batch.id, tasks=batch.tasks, done=batch.done)

    @app.get("/api/tasks", response_model=TaskQueueResponse)
    async def list_tasks() -> TaskQueueResponse:
        workspace = app.state.workspace
        return TaskQueueResponse(tasks=workspace.tasks, is_processing=workspace.is_processing)

    @app.delete("/api/tasks")
    async def clear_tasks() -> dict[str, int]:
        return {"cleared": app.state.workspace.clear_finished_tasks()}

    @app.get("/api/prompts", response_model=list[PromptRecord])
    async def list_prompts(view: ViewName | None = None) -> list[PromptRecord]:
        with _library_errors():
            return library().list_view(view or app.state.workspace.active_view)

    @app.patch("/api/prompts/{record_id}", response_model=PromptRecord)
    async def update_prompt(record_id: str, changes: PromptUpdate) -> PromptRecord:
        with _library_errors():
            return library().update_record(record_id, changes)

    @app.post("/api/prompts/{record_id}/save", response_model=PromptRecord)
    async def save_prompt(record_id: str) -> PromptRecord:
        with _library_errors():
            return library().save_to_library(record_id)

    @app.delete("/api/prompts/{record_id}")
    async def delete_prompt(
        record_id: str,
        view: ViewName | None = None,
        confirm: bool = False,
    ) -> dict[str, str]:
        with _library_errors():
            prompts = library(confirm)
            if view is None:
                _, view = prompts.find(record_id)
            if not prompts.delete_single(record_id, from_library=view == "library"):
                raise HTTPException(status_code=409, detail=CONFIRMATION_REQUIRED)
        return {"deleted": record_id}

    @app.post("/api/prompts/{record_id}/sample-image", response_model=PromptRecord)
    async def create_sample_image(
        record_id: str,
        payload: SampleImageRequest | None = Body(default=None),
    ) -> PromptRecord:
        engine = require_engine()
        with _library_errors():
            record, _ = library().find(record_id)
        prompt_text = (payload.prompt if payload else None) or record.content
        try:
            image = await engine.generate_sample_image(prompt_text)
        except (ExtractionError, ValueError):
            logger.exception("sample_image event=failed record_id=%s", record_id)
            raise HTTPException(status_code=502, detail=SAMPLE_IMAGE_FAILED) from None
        with _library_errors():
            return library().add_image(record_id, image)

    @app.post("/api/prompts/{record_id}/crop", response_model=PromptRecord)
    async def crop_prompt_source(record_id: str, box: CropBox) -> PromptRecord:
        with _library_errors():
            prompts = library()
            record, _ = prompts.find(record_id)
            if record.original_source_image is None:
                raise HTTPException(status_code=400, detail="Prompt has no source image")
            try:
                image = await run_in_threadpool(
                    crop_source_image, record.original_source_image, box
                )
            except CropError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            return prompts.add_image(record_id, image)

    @app.delete("/api/prompts/{record_id}/images/{image_id}", response_model=PromptRecord)
    async def delete_prompt_image(record_id: str, image_id: str) -> PromptRecord:
        with _library_errors():
            return library().remove_image(record_id, image_id)

    @app.get("/api/prompts/{record_id}/export")
    async def export_prompt(record_id: str) -> Response:
        with _library_errors():
            record, _ = library().find(record_id)
        return _download(export_to_json([record], single_export_prefix(record)))

    @app.post("/api/view", response_model=SelectionResponse)
    async def switch_view(payload: ViewRequest) -> SelectionResponse:
        app.state.workspace.switch_view(payload.view)
        logger.info("view event=switched view=%s", payload.view)
        return selection_response()

    @app.get("/api/selection", response_model=SelectionResponse)
    async def get_selection() -> SelectionResponse:
        return selection_response()

    @app.post("/api/selection/toggle", response_model=SelectionResponse)
    async def toggle_selection(payload: SelectionToggleRequest) -> SelectionResponse:
        app.state.workspace.toggle_selection(payload.id)
        return selection_response()

    @app.post("/api/selection/all", response_model=SelectionResponse)
    async def toggle_select_all() -> SelectionResponse:
        workspace = app.state.workspace
        with _library_errors():
            visible = library().list_view(workspace.active_view)
        workspace.toggle_select_all([record.id for record in visible])
        return selection_response()

    @app.post("/api/selection/save")
    async def save_selection() -> dict[str, Any]:
        if app.state.workspace.active_view != "extract":
            raise HTTPException(status_code=400, detail="Only new results can be saved")
        with _library_errors():
            saved = library().save_selected_to_library()
        return {"saved": [record.id for record in saved]}

    @app.post("/api/selection/delete")
    async def delete_selection(confirm: bool = False) -> dict[str, int]:
        workspace = app.state.workspace
        count = len(workspace.selection)
        with _library_errors():
            deleted = library(confirm).bulk_delete(from_library=workspace.active_view == "library")
        if not deleted:
            raise HTTPException(status_code=409, detail=CONFIRMATION_REQUIRED)
        return {"deleted": count}

    @app.get("/api/selection/export")
    async def export_selection() -> Response:
        view = app.state.workspace.active_view
        with _library_errors():
            records = library().selected_records()
        return _download(export_to_json(records, view_export_prefix(view, selected=True)))

    @app.get("/api/export")
    async def export_view(view: ViewName | None = None) -> Response:
        view = view or app.state.workspace.active_view
        with _library_errors():
            records = library().list_view(view)
        return _download(export_to_json(records, view_export_prefix(view, selected=False)))

    @app.delete("/api/library")
    async def clear_library(confirm: bool = False) -> dict[str, str]:
        with _library_errors():
            cleared = library(confirm).clear_library()
        if not cleared:
            raise HTTPException(status_code=409, detail=CONFIRMATION_REQUIRED)
        return {"status": "cleared"}

    return app


@contextmanager
def _library_errors() -> Iterator[None]:
    """Translate library failures into HTTP errors at the route boundary."""
    try:
        yield
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Prompt not found") from exc
    except LibraryError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _download(export: ExportFile | None) -> Response:
    # Nothing selected or an empty view: no file.
    if export is None:
        return Response(status_code=204)
    return Response(
        content=export.content,
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(export.filename)}"},
    )


# Module-level app for `uvicorn prompt_miner.main:app`.
app = create_app()
