"""Contracts with the external recognition service and image acquisition.

The recognition service is reachable only through these coroutines.  An
implementation may also publish ProgressEvents on the progress channel
while a call runs; the orchestrator treats those events as the primary
source of truth and a call's return value as the fallback.
"""

from __future__ import annotations

from typing import Optional, Protocol

from pydantic import BaseModel, Field

from mathlens.domain.enums import EventStage
from mathlens.domain.events import ProgressEvent
from mathlens.domain.session import Analysis, Verification


class RecognitionServiceError(Exception):
    """Raised when a recognition call fails or is rejected."""


class ImageAcquisitionError(Exception):
    """Raised when an image source cannot produce an image."""


# ── Call results ─────────────────────────────────────────────────────────────

class LatexResult(BaseModel):
    latex: str = Field(..., min_length=1)
    model_name: Optional[str] = None
    prompt_version: Optional[str] = None

    model_config = {"protected_namespaces": ()}

    def to_event(self, session_id: str, attempt: Optional[int] = None) -> ProgressEvent:
        return ProgressEvent.model_validate({
            "stage": EventStage.LATEX,
            "id": session_id,
            "attempt": attempt,
            **self.model_dump(exclude_none=True),
        })


class AnalysisResult(BaseModel):
    title: str
    analysis: Analysis

    def to_event(self, session_id: str, attempt: Optional[int] = None) -> ProgressEvent:
        return ProgressEvent(
            stage=EventStage.ANALYSIS,
            id=session_id,
            title=self.title,
            analysis=self.analysis,
            attempt=attempt,
        )


class VerificationResult(BaseModel):
    confidence_score: int = Field(..., ge=0, le=100)
    verification: Optional[Verification] = None
    verification_report: Optional[str] = None

    def to_event(self, session_id: str, attempt: Optional[int] = None) -> ProgressEvent:
        return ProgressEvent.model_validate({
            "stage": EventStage.CONFIDENCE,
            "id": session_id,
            "attempt": attempt,
            **self.model_dump(exclude_none=True),
        })


# ── Protocols ────────────────────────────────────────────────────────────────

class RecognitionService(Protocol):
    """The three independent backend operations.

    ``attempt`` numbers the dispatch of that stage within the session.
    Events an implementation publishes for a call should carry it.
    """

    async def extract_latex(self, session_id: str, image: str, attempt: int = 0) -> LatexResult:
        ...

    async def analyze(self, session_id: str, image: str, attempt: int = 0) -> AnalysisResult:
        ...

    async def verify(
        self, session_id: str, latex: str, image: str, attempt: int = 0
    ) -> VerificationResult:
        ...


class ImageSource(Protocol):
    """Something that can (re)produce the image to recognise.

    ``acquire`` returns the image as base64-encoded PNG data (no data URL
    prefix).  Region capture lives outside this package; it only needs to
    satisfy this protocol.
    """

    async def acquire(self) -> str:
        ...
