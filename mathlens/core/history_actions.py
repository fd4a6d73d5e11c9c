"""User actions on saved history: favorite, rename, delete, save.

Each action mutates the history cache first (so every view sees it at
once) and then awaits the durable write.  A failed write is logged and
re-raised; the cache is not rolled back because the next poll replaces
it with whatever the durable store actually holds.
"""

from __future__ import annotations

import logging

from mathlens.domain.session import HistoryRecord, RecognitionSession
from mathlens.store.history_cache import HistoryCache
from mathlens.store.history_repository import HistoryRepository
from mathlens.store.result_store import ActiveResultStore

logger = logging.getLogger(__name__)


class HistoryActions:
    def __init__(
        self,
        repository: HistoryRepository,
        cache: HistoryCache,
        result_store: ActiveResultStore | None = None,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self._result_store = result_store

    async def set_favorite(self, record_id: str, is_favorite: bool) -> HistoryRecord:
        self._cache.update_item(record_id, {"is_favorite": is_favorite})
        self._patch_active(record_id, {"is_favorite": is_favorite})
        try:
            return await self._repository.update_favorite(record_id, is_favorite)
        except Exception as exc:
            logger.error("Favorite update for %s failed: %s", record_id, exc)
            raise

    async def rename(self, record_id: str, title: str) -> HistoryRecord:
        self._cache.update_item(record_id, {"title": title})
        self._patch_active(record_id, {"title": title})
        try:
            return await self._repository.update_title(record_id, title)
        except Exception as exc:
            logger.error("Rename of %s failed: %s", record_id, exc)
            raise

    async def delete(self, record_id: str) -> None:
        self._cache.remove(record_id)
        try:
            await self._repository.delete(record_id)
        except Exception as exc:
            logger.error("Delete of %s failed: %s", record_id, exc)
            raise

    async def save(self, session: RecognitionSession) -> HistoryRecord:
        """Explicitly save *session* (e.g. after editing its LaTeX)."""
        record = HistoryRecord.from_session(session)
        if record.id in self._cache:
            self._cache.update_item(record.id, record.model_dump())
        else:
            self._cache.add(record)
        try:
            return await self._repository.add(record)
        except Exception as exc:
            logger.error("Saving %s failed: %s", record.id, exc)
            raise

    def _patch_active(self, record_id: str, partial: dict) -> None:
        if self._result_store is None:
            return
        current = self._result_store.result
        if current is not None and current.id == record_id:
            self._result_store.patch(partial)
