"""REST endpoints for saved history.

Reads are served from the HistoryCache; writes go through HistoryActions
(optimistic cache update, then the durable write).
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from mathlens.core.history_actions import HistoryActions
from mathlens.store.history_cache import HistoryCache
from mathlens.store.history_repository import RecordNotFoundError

logger = logging.getLogger(__name__)


class FavoriteUpdate(BaseModel):
    is_favorite: bool


class TitleUpdate(BaseModel):
    title: str = Field(..., min_length=1, max_length=256)


def create_history_router(cache: HistoryCache, actions: HistoryActions) -> APIRouter:
    """Factory that wires the history endpoints to the cache and actions."""

    router = APIRouter(prefix="/api/history", tags=["history"])

    @router.get("")
    async def list_history(favorites_only: bool = False) -> dict[str, Any]:
        items = cache.value
        if favorites_only:
            items = [item for item in items if item.is_favorite]
        return {
            "items": [item.model_dump(mode="json") for item in items],
            "count": len(items),
        }

    @router.post("/refresh")
    async def refresh_history() -> dict[str, Any]:
        try:
            await cache.refresh()
        except Exception as exc:
            raise HTTPException(status_code=502, detail=f"History refresh failed: {exc}") from exc
        return {"count": len(cache)}

    @router.get("/{record_id}")
    async def get_record(record_id: str) -> dict[str, Any]:
        record = cache.get(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Item with ID '{record_id}' not found")
        return record.model_dump(mode="json")

    @router.put("/{record_id}/favorite")
    async def set_favorite(record_id: str, update: FavoriteUpdate) -> dict[str, Any]:
        try:
            record = await actions.set_favorite(record_id, update.is_favorite)
        except RecordNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return record.model_dump(mode="json")

    @router.put("/{record_id}/title")
    async def rename(record_id: str, update: TitleUpdate) -> dict[str, Any]:
        try:
            record = await actions.rename(record_id, update.title)
        except RecordNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return record.model_dump(mode="json")

    @router.delete("/{record_id}", status_code=204)
    async def delete(record_id: str) -> None:
        try:
            await actions.delete(record_id)
        except RecordNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    return router
