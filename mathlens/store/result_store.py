"""ActiveResultStore — owns the single in-flight or most recent session.

Every mutation replaces the state snapshot as a whole, so readers never
observe a half-applied update.  ``patch`` is a shallow merge that
overwrites exactly the supplied fields: applying the same patch twice,
or two patches over disjoint fields in either order, gives the same
result.

The store has no knowledge of the history cache; callers that want a
terminal patch reflected there make that call themselves.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel

from mathlens.domain.session import RecognitionSession

logger = logging.getLogger(__name__)


class RecognitionState(BaseModel):
    result: Optional[RecognitionSession] = None
    is_loading: bool = False
    error_message: str = ""
    prompt_version: Optional[str] = None
    current_image: Optional[str] = None

    model_config = {"frozen": True}


class ActiveResultStore:
    def __init__(self) -> None:
        self._state = RecognitionState()

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def state(self) -> RecognitionState:
        return self._state

    @property
    def result(self) -> RecognitionSession | None:
        return self._state.result

    # ── Mutation ─────────────────────────────────────────────────────────

    def _update(self, **changes: Any) -> None:
        self._state = self._state.model_copy(update=changes)

    def reset(self) -> None:
        self._state = RecognitionState()

    def start(self) -> None:
        """Mark a recognition as running and clear any previous error."""
        self._update(is_loading=True, error_message="")

    def set_loading(self, value: bool) -> None:
        self._update(is_loading=value)

    def set_error(self, message: str) -> None:
        self._update(is_loading=False, error_message=message)

    def clear_error(self) -> None:
        self._update(error_message="")

    def set_result(self, result: RecognitionSession | None) -> None:
        self._update(result=result)

    def patch(self, partial: dict[str, Any]) -> bool:
        """Shallow-merge *partial* into the current session.

        Ignored when there is no session, so a late event cannot resurrect
        a session the user has already navigated away from.  Returns True
        if a session was patched.
        """
        current = self._state.result
        if current is None:
            logger.debug("Ignoring patch of %s: no active session", sorted(partial))
            return False
        self._update(result=current.merged(partial))
        return True

    def update_latex(self, latex: str) -> None:
        self.patch({"latex": latex})

    def update_title(self, title: str) -> None:
        self.patch({"title": title})

    def set_prompt_version(self, version: str | None) -> None:
        self._update(prompt_version=version)

    def set_current_image(self, image: str | None) -> None:
        self._update(current_image=image)
