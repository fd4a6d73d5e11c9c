"""PhaseState and the phase transition function.

The transition function is pure: every listener on the progress channel
keeps its own PhaseTrack and folds messages through ``reduce_phase``.
Two listeners that see the same messages therefore hold the same state
without sharing anything.

Transition rules:
    - RecognitionStarted resets to {latex: pending, analysis: pending,
      verify: idle}, whatever the prior state was.
    - Messages for a different session are stale and change nothing.
    - latex output     → latex done; verify idle → pending (unblocked).
    - analysis output  → analysis done.
    - confidence score → verify done, but never while verify is idle.
    - StageFailed      → that stage pending → error.
    - StageRetrying    → that stage → pending, under the new attempt number.
    - Events and failures tagged with an older attempt of their stage are
      stale too.
    Sibling stages are never touched by a message about another stage.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from mathlens.domain.enums import EventStage, PhaseStatus, Stage
from mathlens.domain.events import (
    ChannelMessage,
    ProgressEvent,
    RecognitionStarted,
    StageFailed,
    StageRetrying,
)

logger = logging.getLogger(__name__)


class PhaseState(BaseModel):
    """Status of each of the three stages for one recognition attempt."""

    latex: PhaseStatus = PhaseStatus.IDLE
    analysis: PhaseStatus = PhaseStatus.IDLE
    verify: PhaseStatus = PhaseStatus.IDLE

    model_config = {"frozen": True}

    @classmethod
    def initial(cls) -> "PhaseState":
        """State of a freshly started recognition."""
        return cls(
            latex=PhaseStatus.PENDING,
            analysis=PhaseStatus.PENDING,
            verify=PhaseStatus.IDLE,
        )

    def get(self, stage: Stage) -> PhaseStatus:
        return getattr(self, stage.value)

    def with_stage(self, stage: Stage, status: PhaseStatus) -> "PhaseState":
        return self.model_copy(update={stage.value: status})

    @property
    def is_settled(self) -> bool:
        """True once nothing is pending any more."""
        return PhaseStatus.PENDING not in (self.latex, self.analysis, self.verify)

    def to_record(self) -> dict[str, str]:
        """Flat record of the three enum values, as persisted."""
        return self.model_dump(mode="json")


class StageAttempts(BaseModel):
    """Latest dispatch attempt of each stage within one session."""

    latex: int = 0
    analysis: int = 0
    verify: int = 0

    model_config = {"frozen": True}

    def get(self, stage: Stage) -> int:
        return getattr(self, stage.value)

    def with_stage(self, stage: Stage, attempt: int) -> "StageAttempts":
        return self.model_copy(update={stage.value: attempt})


class PhaseTrack(BaseModel):
    """A listener's private view: which session it follows and its phases."""

    session_id: str = ""
    phases: PhaseState = PhaseState()
    attempts: StageAttempts = StageAttempts()

    model_config = {"frozen": True}


def _apply_progress(phases: PhaseState, event: ProgressEvent) -> PhaseState:
    if not event.is_completion:
        return phases

    if event.stage is EventStage.LATEX:
        phases = phases.with_stage(Stage.LATEX, PhaseStatus.DONE)
        if phases.verify is PhaseStatus.IDLE:
            phases = phases.with_stage(Stage.VERIFY, PhaseStatus.PENDING)
        return phases

    if event.stage is EventStage.ANALYSIS:
        return phases.with_stage(Stage.ANALYSIS, PhaseStatus.DONE)

    # Confidence: the verify stage must have been unblocked first.
    if phases.verify is PhaseStatus.IDLE:
        logger.debug("Ignoring confidence event for %s: verify still idle", event.id)
        return phases
    return phases.with_stage(Stage.VERIFY, PhaseStatus.DONE)


def _message_stage(message: ChannelMessage) -> Stage | None:
    if isinstance(message, ProgressEvent):
        return message.stage.stage
    if isinstance(message, (StageFailed, StageRetrying)):
        return message.stage
    return None


def is_current(track: PhaseTrack, message: ChannelMessage) -> bool:
    """True if *message* is about the session and stage attempts *track* follows.

    ``RecognitionStarted`` is always current.  A retry announcement is
    current for its session whatever its number.
    """
    if isinstance(message, RecognitionStarted):
        return True
    if message.session_id != track.session_id:
        return False
    if isinstance(message, StageRetrying):
        return True
    attempt = message.attempt
    return attempt is None or attempt == track.attempts.get(_message_stage(message))


def reduce_phase(track: PhaseTrack, message: ChannelMessage) -> PhaseTrack:
    """Fold one channel message into *track* and return the new track."""
    if isinstance(message, RecognitionStarted):
        return PhaseTrack(session_id=message.session_id, phases=PhaseState.initial())

    if not is_current(track, message):
        logger.debug(
            "Discarding stale %s for session %s attempt %s (active: %s)",
            type(message).__name__,
            message.session_id,
            getattr(message, "attempt", None),
            track.session_id or "<none>",
        )
        return track

    phases, attempts = track.phases, track.attempts
    if isinstance(message, ProgressEvent):
        phases = _apply_progress(phases, message)
    elif isinstance(message, StageFailed):
        if phases.get(message.stage) is PhaseStatus.PENDING:
            phases = phases.with_stage(message.stage, PhaseStatus.ERROR)
    elif isinstance(message, StageRetrying):
        phases = phases.with_stage(message.stage, PhaseStatus.PENDING)
        attempts = attempts.with_stage(message.stage, message.attempt)

    if phases == track.phases and attempts == track.attempts:
        return track
    return track.model_copy(update={"phases": phases, "attempts": attempts})
