"""REST endpoints driving the active recognition.

Paths:
    POST /api/recognize/file        start from an image file on disk
    POST /api/recognize/image       start from base64 / data URL image data
    POST /api/retry/{stage}         retry one stage (latex | analysis | verify)
    GET  /api/phase                 phase state of the active recognition
    GET  /api/result                the active result
    PUT  /api/result/latex          edit the LaTeX of the active result
    PUT  /api/result/title          rename the active result
    POST /api/result/save           save the active result to history
    GET  /api/notifications         visible toasts
    DELETE /api/notifications/{id}  dismiss a toast
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from mathlens.core.history_actions import HistoryActions
from mathlens.core.listeners import PhaseListener
from mathlens.core.orchestrator import RecognitionOrchestrator, RetryUnavailableError
from mathlens.domain.enums import Stage
from mathlens.services.image_sources import Base64ImageSource, FileImageSource
from mathlens.services.notifications import NotificationCenter
from mathlens.services.recognition import ImageAcquisitionError, ImageSource
from mathlens.store.history_cache import HistoryCache
from mathlens.store.history_repository import RecordNotFoundError
from mathlens.store.result_store import ActiveResultStore

logger = logging.getLogger(__name__)


class FileRecognitionRequest(BaseModel):
    path: Path


class ImageRecognitionRequest(BaseModel):
    image: str = Field(..., min_length=1, description="Base64 PNG data or a data URL")


class LatexEdit(BaseModel):
    latex: str


class TitleEdit(BaseModel):
    title: str = Field(..., min_length=1, max_length=256)


def create_recognition_router(
    orchestrator: RecognitionOrchestrator,
    result_store: ActiveResultStore,
    history_cache: HistoryCache,
    history_actions: HistoryActions,
    notifications: NotificationCenter,
    app_listener: PhaseListener | None = None,
) -> APIRouter:
    """Factory that wires the recognition endpoints to the orchestrator."""

    router = APIRouter(prefix="/api", tags=["recognition"])

    async def _start(source: ImageSource) -> dict[str, Any]:
        try:
            session_id = await orchestrator.recognize(source)
        except ImageAcquisitionError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {
            "status": "started",
            "session_id": session_id,
            "phases": orchestrator.phases.to_record(),
        }

    # ── Start / retry ────────────────────────────────────────────────────

    @router.post("/recognize/file", status_code=202)
    async def recognize_file(request: FileRecognitionRequest) -> dict[str, Any]:
        return await _start(FileImageSource(request.path))

    @router.post("/recognize/image", status_code=202)
    async def recognize_image(request: ImageRecognitionRequest) -> dict[str, Any]:
        try:
            source = Base64ImageSource(request.image)
        except ImageAcquisitionError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return await _start(source)

    @router.post("/retry/{stage}")
    async def retry_stage(stage: Stage) -> dict[str, Any]:
        try:
            await orchestrator.retry(stage)
        except RetryUnavailableError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ImageAcquisitionError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {
            "stage": stage.value,
            "session_id": orchestrator.session_id,
            "phases": orchestrator.phases.to_record(),
        }

    # ── State ────────────────────────────────────────────────────────────

    @router.get("/phase")
    async def get_phase() -> dict[str, Any]:
        body: dict[str, Any] = {
            "session_id": orchestrator.session_id,
            "phases": orchestrator.phases.to_record(),
        }
        if app_listener is not None:
            body["last_shown"] = app_listener.phases.to_record()
        return body

    @router.get("/result")
    async def get_result() -> dict[str, Any]:
        return result_store.state.model_dump(mode="json", exclude={"current_image"})

    # ── Edits ────────────────────────────────────────────────────────────

    def _require_result():
        result = result_store.result
        if result is None:
            raise HTTPException(status_code=404, detail="No active result")
        return result

    @router.put("/result/latex")
    async def edit_latex(edit: LatexEdit) -> dict[str, Any]:
        _require_result()
        result_store.update_latex(edit.latex)
        return result_store.result.model_dump(mode="json")

    @router.put("/result/title")
    async def edit_title(edit: TitleEdit) -> dict[str, Any]:
        result = _require_result()
        if result.id and result.id in history_cache:
            try:
                await history_actions.rename(result.id, edit.title)
            except RecordNotFoundError:
                # Not durably saved yet; the local rename still stands.
                result_store.update_title(edit.title)
        else:
            result_store.update_title(edit.title)
        return result_store.result.model_dump(mode="json")

    @router.post("/result/save")
    async def save_result() -> dict[str, Any]:
        result = _require_result()
        if not result.id:
            raise HTTPException(status_code=409, detail="Result has no identifier yet")
        record = await history_actions.save(result)
        return record.model_dump(mode="json")

    # ── Notifications ────────────────────────────────────────────────────

    @router.get("/notifications")
    async def list_notifications() -> dict[str, Any]:
        toasts = notifications.toasts
        return {"notifications": [t.model_dump(mode="json") for t in toasts], "count": len(toasts)}

    @router.delete("/notifications/{toast_id}", status_code=204)
    async def dismiss_notification(toast_id: int) -> None:
        notifications.dismiss(toast_id)

    return router
