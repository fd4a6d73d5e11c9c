"""Phase listeners — independent reducers over the progress channel.

Each listener owns a private PhaseTrack and folds every channel message
through ``reduce_phase``.  No listener calls another; they agree because
they see the same messages and the transition function is deterministic.

    PhaseListener            bare phase tracking
    PersistingPhaseListener  application scoped; writes every transition
                             to local state, rehydrates on construction
    ResultListener           view scoped; patches the active result and
                             reflects completed stages into the history cache
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from mathlens.domain.enums import PhaseStatus
from mathlens.domain.events import ChannelMessage, ProgressEvent
from mathlens.domain.phase import PhaseState, PhaseTrack, is_current, reduce_phase
from mathlens.domain.session import HistoryRecord
from mathlens.events.channel import ProgressChannel, Subscription
from mathlens.store.history_cache import HistoryCache
from mathlens.store.phase_persistence import PhaseStatePersistence
from mathlens.store.result_store import ActiveResultStore

logger = logging.getLogger(__name__)

TransitionHook = Callable[[PhaseTrack, PhaseTrack, ChannelMessage], None]


class PhaseListener:
    def __init__(self, name: str, initial: Optional[PhaseState] = None) -> None:
        self.name = name
        self._track = PhaseTrack(phases=initial or PhaseState())
        self._subscription: Subscription | None = None

    # ── Subscription ─────────────────────────────────────────────────────

    def attach(self, channel: ProgressChannel) -> None:
        if self._subscription is not None and not self._subscription.closed:
            raise RuntimeError(f"listener {self.name!r} is already attached")
        self._subscription = channel.subscribe(self.handle)

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    # ── State ────────────────────────────────────────────────────────────

    @property
    def track(self) -> PhaseTrack:
        return self._track

    @property
    def phases(self) -> PhaseState:
        return self._track.phases

    @property
    def session_id(self) -> str:
        return self._track.session_id

    # ── Message handling ─────────────────────────────────────────────────

    def handle(self, message: ChannelMessage) -> None:
        before = self._track
        accepted = is_current(before, message)
        after = reduce_phase(before, message)
        self._track = after
        if not accepted:
            logger.debug("[%s] stale %s for %s ignored", self.name, type(message).__name__, message.session_id)
            return

        self.on_message(before, after, message)
        if after.phases != before.phases or after.session_id != before.session_id:
            logger.debug(
                "[%s] %s: %s → %s",
                self.name,
                after.session_id,
                before.phases.to_record(),
                after.phases.to_record(),
            )
            self.on_transition(before, after, message)

    def on_message(self, before: PhaseTrack, after: PhaseTrack, message: ChannelMessage) -> None:
        """Called for every message about the followed session."""

    def on_transition(self, before: PhaseTrack, after: PhaseTrack, message: ChannelMessage) -> None:
        """Called when the followed session or its phases changed."""


class PersistingPhaseListener(PhaseListener):
    """Keeps the last shown PhaseState in local storage.

    On construction the persisted state (if any) is loaded verbatim.  It
    is not bound to any session, so no later event can advance it; only a
    new recognition replaces it.
    """

    def __init__(self, persistence: PhaseStatePersistence, name: str = "app") -> None:
        self._persistence = persistence
        restored = persistence.load()
        if restored is not None:
            logger.info("Restored last phase state: %s", restored.to_record())
        super().__init__(name, initial=restored)

    def on_transition(self, before: PhaseTrack, after: PhaseTrack, message: ChannelMessage) -> None:
        try:
            self._persistence.save(after.phases)
        except OSError as exc:
            logger.warning("Could not persist phase state: %s", exc)


class ResultListener(PhaseListener):
    """Applies completed stages to the active result and the history cache.

    Only an event that completes its stage is written, and only once the
    stage is ``done`` in this listener's own track.  A confidence event
    that arrives while verify is still idle never reaches the result, and
    a later partial event cannot blank fields a completion already wrote.

    Args:
        result_store: The active result to patch.
        history_cache: Receives each completed stage's fields.
        transition_hook: Optional callback for every phase transition.
    """

    def __init__(
        self,
        result_store: ActiveResultStore,
        history_cache: HistoryCache | None = None,
        transition_hook: TransitionHook | None = None,
        name: str = "view",
    ) -> None:
        super().__init__(name)
        self._result_store = result_store
        self._history_cache = history_cache
        self._transition_hook = transition_hook

    def on_message(self, before: PhaseTrack, after: PhaseTrack, message: ChannelMessage) -> None:
        if not isinstance(message, ProgressEvent) or not message.is_completion:
            return
        if after.phases.get(message.stage.stage) is not PhaseStatus.DONE:
            return

        patch = message.session_patch()
        if not self._result_store.patch(patch):
            return
        if "prompt_version" in patch:
            self._result_store.set_prompt_version(patch["prompt_version"])
        self._reflect_into_history(patch)

    def on_transition(self, before: PhaseTrack, after: PhaseTrack, message: ChannelMessage) -> None:
        if self._transition_hook is not None:
            self._transition_hook(before, after, message)

    def _reflect_into_history(self, patch: dict) -> None:
        if self._history_cache is None:
            return
        session = self._result_store.result
        if session is None or not session.id:
            return
        if session.id in self._history_cache:
            self._history_cache.update_item(session.id, patch)
        else:
            self._history_cache.add(HistoryRecord.from_session(session))
