"""ProgressChannel — one logical stream of progress messages, many listeners.

Listeners subscribe a callback and receive every published message in
publication order.  Delivery is synchronous on the event loop thread:
``publish`` returns once every listener has seen the message.  A listener
that raises is logged and skipped; the others still receive the message.

The channel also remembers which (session, stage, attempt) completions
it has delivered so a dispatcher can tell whether the service already
reported a result through events.  An untagged completion counts for the
stage's latest announced attempt.
"""

from __future__ import annotations

import logging
from typing import Callable

from mathlens.domain.enums import EventStage
from mathlens.domain.events import (
    ChannelMessage,
    ProgressEvent,
    RecognitionStarted,
    StageRetrying,
)

logger = logging.getLogger(__name__)

Listener = Callable[[ChannelMessage], None]


class Subscription:
    """Handle returned by ``ProgressChannel.subscribe``."""

    __slots__ = ("_channel", "_listener", "_closed")

    def __init__(self, channel: "ProgressChannel", listener: Listener) -> None:
        self._channel = channel
        self._listener = listener
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._channel._unsubscribe(self._listener)
            self._closed = True

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ProgressChannel:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._delivered: dict[str, set[tuple[EventStage, int]]] = {}
        self._attempts: dict[tuple[str, EventStage], int] = {}

    # ── Subscription ─────────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Subscription:
        self._listeners.append(listener)
        logger.debug("Listener subscribed (%d total)", len(self._listeners))
        return Subscription(self, listener)

    def _unsubscribe(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return
        logger.debug("Listener unsubscribed (%d remaining)", len(self._listeners))

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    # ── Publishing ───────────────────────────────────────────────────────

    def publish(self, message: ChannelMessage) -> None:
        self._record(message)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("Progress listener failed on %s", type(message).__name__)

    def has_delivered(self, session_id: str, stage: EventStage, attempt: int = 0) -> bool:
        """True if a completion for *attempt* of *stage* of *session_id* was published."""
        return (stage, attempt) in self._delivered.get(session_id, ())

    def _record(self, message: ChannelMessage) -> None:
        if isinstance(message, RecognitionStarted):
            # Only the newest session can still need fallback bookkeeping.
            self._delivered = {message.session_id: set()}
            self._attempts = {}
        elif isinstance(message, StageRetrying):
            key = (message.session_id, EventStage.for_stage(message.stage))
            self._attempts[key] = message.attempt
        elif isinstance(message, ProgressEvent) and message.is_completion:
            attempt = message.attempt
            if attempt is None:
                attempt = self._attempts.get((message.id, message.stage), 0)
            self._delivered.setdefault(message.id, set()).add((message.stage, attempt))
