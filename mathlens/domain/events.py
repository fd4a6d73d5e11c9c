"""Messages carried on the progress channel.

``ProgressEvent`` is what the recognition service emits as each stage
produces output.  The three control messages are emitted by the
orchestrator so that every listener can derive failures and retries from
the same stream instead of being called directly.

Retrying a stage keeps its session id and starts a new numbered attempt
(the first dispatch is attempt 0).  Events and failures tagged with an
older attempt belong to a superseded dispatch and are discarded; untagged
ones are taken to belong to the current attempt.
"""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator

from mathlens.domain.enums import EventStage, Stage
from mathlens.domain.session import Analysis, Verification


class ProgressEvent(BaseModel):
    """A stage's output, tagged with the session it belongs to.

    Only the fields relevant to ``stage`` are expected to be present.
    """

    stage: EventStage
    id: str = Field(..., min_length=1, description="Originating session identifier")
    latex: Optional[str] = None
    title: Optional[str] = None
    analysis: Optional[Analysis] = None
    confidence_score: Optional[int] = Field(default=None, ge=0, le=100)
    verification: Optional[Verification] = None
    verification_report: Optional[str] = None
    created_at: Optional[str] = None
    original_image: Optional[str] = None
    model_name: Optional[str] = None
    prompt_version: Optional[str] = None
    attempt: Optional[int] = Field(
        default=None,
        ge=0,
        description="Dispatch attempt of the stage; None means the current one",
    )

    model_config = {"frozen": True, "protected_namespaces": ()}

    @field_validator("confidence_score", mode="before")
    @classmethod
    def score_must_be_integral(cls, v: Any) -> Any:
        # Services sometimes send 87.0; anything fractional is rejected below.
        if isinstance(v, float) and v.is_integer():
            return int(v)
        return v

    @property
    def session_id(self) -> str:
        return self.id

    @property
    def is_completion(self) -> bool:
        """True if the event carries the output that completes its stage."""
        if self.stage is EventStage.LATEX:
            return bool(self.latex)
        if self.stage is EventStage.ANALYSIS:
            return self.analysis is not None
        return self.confidence_score is not None

    def session_patch(self) -> dict[str, Any]:
        """Session fields explicitly supplied by this event, and nothing else."""
        patch: dict[str, Any] = {}
        for name in self.model_fields_set:
            if name in ("stage", "attempt"):
                continue
            value = getattr(self, name)
            if value is not None:
                patch[name] = value
        return patch


class RecognitionStarted(BaseModel):
    session_id: str = Field(..., min_length=1)

    model_config = {"frozen": True}


class StageFailed(BaseModel):
    session_id: str = Field(..., min_length=1)
    stage: Stage
    message: str = ""
    attempt: Optional[int] = Field(default=None, ge=0)

    model_config = {"frozen": True}


class StageRetrying(BaseModel):
    session_id: str = Field(..., min_length=1)
    stage: Stage
    attempt: int = Field(..., ge=1, description="Number of the attempt being started")

    model_config = {"frozen": True}


ChannelMessage = Union[ProgressEvent, RecognitionStarted, StageFailed, StageRetrying]
