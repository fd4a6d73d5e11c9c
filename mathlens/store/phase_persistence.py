"""Persistence bridge for the last known PhaseState.

The saved record is a hint of what was last shown, not a task queue:
loading it never triggers any recognition work.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from mathlens.domain.phase import PhaseState
from mathlens.store.local_state import LocalStateStore

logger = logging.getLogger(__name__)

PHASE_STATE_KEY = "recognition_phase"


class PhaseStatePersistence:
    def __init__(self, state_store: LocalStateStore, key: str = PHASE_STATE_KEY) -> None:
        self._state_store = state_store
        self._key = key

    def save(self, phases: PhaseState) -> None:
        self._state_store.set(self._key, phases.to_record())

    def load(self) -> PhaseState | None:
        """Return the persisted PhaseState, or None if absent or unreadable."""
        record = self._state_store.get(self._key)
        if record is None:
            return None
        try:
            return PhaseState.model_validate(record)
        except ValidationError as exc:
            logger.warning("Discarding invalid persisted phase state: %s", exc)
            return None

    def clear(self) -> None:
        self._state_store.delete(self._key)
