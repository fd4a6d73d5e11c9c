"""Shared fixtures: a scriptable recognition service and image helpers."""

from __future__ import annotations

import asyncio
import base64

import pytest

from mathlens.domain.enums import VerificationStatus
from mathlens.domain.session import Analysis, Variable, Verification
from mathlens.events.channel import ProgressChannel
from mathlens.services.image_sources import Base64ImageSource
from mathlens.services.recognition import (
    AnalysisResult,
    LatexResult,
    VerificationResult,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-body"
PNG_B64 = base64.b64encode(PNG_BYTES).decode("ascii")


class FakeRecognitionService:
    """In-process RecognitionService whose answers tests can script.

    - ``errors[op]`` makes that op raise.
    - ``block(op)`` holds that op until the returned event is set.
    - ``*_queue`` lists are consumed one per call before falling back
      to the default result.
    - with ``channel`` set, each result is also published as a progress
      event before the call returns (like a streaming service).
    """

    def __init__(self) -> None:
        self.latex_result = LatexResult(latex="x^2", model_name="fake-model")
        self.analysis_result = AnalysisResult(
            title="Square",
            analysis=Analysis(
                summary="The square of x",
                variables=[Variable(symbol="x", description="a real number")],
            ),
        )
        self.verification_result = VerificationResult(
            confidence_score=87,
            verification=Verification(status=VerificationStatus.WARNING),
        )
        self.latex_queue: list[LatexResult] = []
        self.errors: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[tuple[str, str]] = []
        self.attempts: list[tuple[str, int]] = []
        self.channel: ProgressChannel | None = None

    def block(self, op: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[op] = gate
        return gate

    def count(self, op: str) -> int:
        return sum(1 for called, _ in self.calls if called == op)

    async def _respond(self, op: str, session_id: str, attempt: int, result):
        self.calls.append((op, session_id))
        self.attempts.append((op, attempt))
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        if op in self.errors:
            raise self.errors[op]
        if self.channel is not None:
            self.channel.publish(result.to_event(session_id, attempt=attempt))
        return result

    async def extract_latex(self, session_id: str, image: str, attempt: int = 0) -> LatexResult:
        result = self.latex_queue.pop(0) if self.latex_queue else self.latex_result
        return await self._respond("latex", session_id, attempt, result)

    async def analyze(self, session_id: str, image: str, attempt: int = 0) -> AnalysisResult:
        return await self._respond("analysis", session_id, attempt, self.analysis_result)

    async def verify(
        self, session_id: str, latex: str, image: str, attempt: int = 0
    ) -> VerificationResult:
        return await self._respond("verify", session_id, attempt, self.verification_result)


class CountingImageSource(Base64ImageSource):
    def __init__(self, data: str = PNG_B64) -> None:
        super().__init__(data)
        self.acquisitions = 0

    async def acquire(self) -> str:
        self.acquisitions += 1
        return await super().acquire()


@pytest.fixture
def service() -> FakeRecognitionService:
    return FakeRecognitionService()


@pytest.fixture
def image_source() -> CountingImageSource:
    return CountingImageSource()


@pytest.fixture
def channel() -> ProgressChannel:
    return ProgressChannel()
