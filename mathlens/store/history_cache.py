"""HistoryCache — locally cached view of the durable history, kept fresh by polling.

Consistency policy:
    - Local mutations (add / update_item / remove) apply immediately and
      are authoritative only until the next successful poll.
    - A successful poll OVERWRITES the whole list with the durable
      store's contents.  Nothing is merged.  If the durable write behind
      a local mutation has not landed when the poll fires, the mutation
      is visibly reverted until the following poll.
    - A failed poll is logged and leaves the cached list untouched;
      polling carries on at the next tick.

The poll timer has an explicit lifecycle: ``initialize`` starts it at
most once, ``destroy`` stops it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from mathlens.domain.session import HistoryRecord

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[list[HistoryRecord]]]


class HistoryCache:
    """Polling read-through cache over a history fetcher.

    Args:
        fetch: Coroutine function returning the durable store's records.
        poll_interval: Seconds between automatic polls.
    """

    def __init__(self, fetch: Fetcher, poll_interval: float = 3.0) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._fetch = fetch
        self._poll_interval = poll_interval
        self._items: list[HistoryRecord] = []
        self._loaded = False
        self._in_flight = False
        self._timer: asyncio.Task | None = None

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Load once, then start periodic polling (idempotent)."""
        if not self._loaded:
            await self._auto_refresh()
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._poll_forever())
            logger.info("History auto-refresh started (every %.1fs)", self._poll_interval)

    async def ensure_loaded(self) -> None:
        """Load once without starting the timer."""
        if not self._loaded:
            await self._auto_refresh()

    def destroy(self) -> None:
        """Stop the poll timer.  The cached list is kept."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            logger.info("History auto-refresh stopped")

    @property
    def is_polling(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def loaded(self) -> bool:
        return self._loaded

    # ── Polling ──────────────────────────────────────────────────────────

    async def refresh(self) -> None:
        """Force one poll now.  No-op if a poll is already in flight.

        Unlike timer ticks, a failure here propagates to the caller (the
        cached list is still left untouched).
        """
        if self._in_flight:
            return
        self._in_flight = True
        try:
            self._set(await self._fetch())
        except Exception:
            logger.warning("History refresh failed; keeping cached list", exc_info=True)
            raise
        finally:
            self._in_flight = False

    async def _auto_refresh(self) -> None:
        if self._in_flight:
            return
        self._in_flight = True
        try:
            self._set(await self._fetch())
        except Exception as exc:
            logger.warning("Auto refresh of history failed: %s", exc)
        finally:
            self._in_flight = False

    async def _poll_forever(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            await self._auto_refresh()

    def _set(self, items: list[HistoryRecord]) -> None:
        self._items = list(items)
        self._loaded = True

    # ── Optimistic local mutation ────────────────────────────────────────

    def add(self, record: HistoryRecord) -> None:
        self._items = [record] + self._items

    def update_item(self, record_id: str, partial: dict[str, Any]) -> None:
        self._items = [
            item.merged(partial) if item.id == record_id else item
            for item in self._items
        ]

    def remove(self, record_id: str) -> None:
        self._items = [item for item in self._items if item.id != record_id]

    def replace(self, items: list[HistoryRecord]) -> None:
        self._set(items)

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def value(self) -> list[HistoryRecord]:
        return list(self._items)

    def get(self, record_id: str) -> HistoryRecord | None:
        for item in self._items:
            if item.id == record_id:
                return item
        return None

    def __contains__(self, record_id: object) -> bool:
        return any(item.id == record_id for item in self._items)

    def __len__(self) -> int:
        return len(self._items)
