"""Durable history store backed by a JSON file.

Design notes:
    - The file holds a JSON array of records, newest first.
    - An asyncio.Lock serialises read-modify-write cycles; file I/O runs
      in a worker thread so the event loop never blocks on disk.
    - Reads are cached by file modification time, so polling an
      unchanged file does not re-parse it.
    - Images arriving as ``data:image/...;base64,`` URLs are written to
      the pictures directory and the record keeps the file path instead.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
from datetime import datetime
from pathlib import Path

from pydantic import TypeAdapter

from mathlens.domain.session import HistoryRecord
from mathlens.foundation.clock import utc_now

logger = logging.getLogger(__name__)

_records_adapter = TypeAdapter(list[HistoryRecord])


class RecordNotFoundError(Exception):
    """Raised when an operation names a history record that does not exist."""

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Item with ID '{record_id}' not found")


class HistoryRepository:
    """Async access to the saved recognition history.

    Args:
        history_path: Location of the JSON history file.
        pictures_dir: Where inline images are stored; None keeps them inline.
    """

    def __init__(self, history_path: Path, pictures_dir: Path | None = None) -> None:
        self._history_path = history_path
        self._pictures_dir = pictures_dir
        self._lock = asyncio.Lock()
        self._cached_mtime: float | None = None
        self._cached: list[HistoryRecord] = []

    # ── Public API ───────────────────────────────────────────────────────

    async def get_all(self) -> list[HistoryRecord]:
        async with self._lock:
            return list(await asyncio.to_thread(self._read))

    async def get(self, record_id: str) -> HistoryRecord | None:
        async with self._lock:
            records = await asyncio.to_thread(self._read)
        for record in records:
            if record.id == record_id:
                return record
        return None

    async def add(self, record: HistoryRecord) -> HistoryRecord:
        """Insert *record* at the front, replacing any record with its id.

        Returns the record as stored (image moved to disk if applicable).
        """
        async with self._lock:
            stored = await asyncio.to_thread(self._store_image, record)
            records = await asyncio.to_thread(self._read)
            records = [stored] + [r for r in records if r.id != stored.id]
            await asyncio.to_thread(self._write, records)
        logger.info("Saved history record %s", stored.id)
        return stored

    async def update_favorite(self, record_id: str, is_favorite: bool) -> HistoryRecord:
        return await self._update(record_id, is_favorite=is_favorite)

    async def update_title(self, record_id: str, title: str) -> HistoryRecord:
        return await self._update(record_id, title=title)

    async def delete(self, record_id: str) -> None:
        async with self._lock:
            records = await asyncio.to_thread(self._read)
            remaining = [r for r in records if r.id != record_id]
            if len(remaining) == len(records):
                raise RecordNotFoundError(record_id)
            await asyncio.to_thread(self._write, remaining)
        logger.info("Deleted history record %s", record_id)

    # ── Internals ────────────────────────────────────────────────────────

    async def _update(self, record_id: str, **changes) -> HistoryRecord:
        async with self._lock:
            records = await asyncio.to_thread(self._read)
            for index, record in enumerate(records):
                if record.id == record_id:
                    updated = record.merged(changes)
                    records[index] = updated
                    await asyncio.to_thread(self._write, records)
                    logger.debug("Updated history record %s: %s", record_id, sorted(changes))
                    return updated
            raise RecordNotFoundError(record_id)

    def _mtime(self) -> float | None:
        try:
            return self._history_path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _read(self) -> list[HistoryRecord]:
        """Must be called while holding self._lock."""
        mtime = self._mtime()
        if mtime is None:
            self._cached_mtime, self._cached = None, []
            return []
        if mtime == self._cached_mtime:
            return list(self._cached)

        records = _records_adapter.validate_json(self._history_path.read_bytes())
        self._cached_mtime, self._cached = mtime, records
        return list(records)

    def _write(self, records: list[HistoryRecord]) -> None:
        """Must be called while holding self._lock."""
        self._history_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._history_path.with_suffix(self._history_path.suffix + ".tmp")
        tmp.write_bytes(_records_adapter.dump_json(records, indent=2))
        os.replace(tmp, self._history_path)
        self._cached_mtime, self._cached = self._mtime(), list(records)

    def _store_image(self, record: HistoryRecord) -> HistoryRecord:
        image = record.original_image
        if self._pictures_dir is None or not image.startswith("data:image"):
            return record

        _, _, encoded = image.partition(",")
        try:
            png_bytes = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Record %s has an undecodable inline image; keeping it inline", record.id)
            return record

        try:
            stamp = datetime.fromisoformat(record.created_at).strftime("%Y%m%d_%H%M%S")
        except ValueError:
            stamp = utc_now().strftime("%Y%m%d_%H%M%S")

        self._pictures_dir.mkdir(parents=True, exist_ok=True)
        path = self._pictures_dir / f"{stamp}_{record.id}.png"
        path.write_bytes(png_bytes)
        return record.merged({"original_image": str(path)})
