"""WebSocket client for an external recognition service.

Each call opens one connection, sends a single JSON request and reads
frames until the call settles:

    → {"op": "latex" | "analysis" | "verify", "id": ..., "attempt": n, "image": ..., "latex"?: ...}
    ← {"stage": "latex" | "analysis" | "confidence", "id": ..., ...}   (zero or more)
    ← {"status": "ok", "result": {...}}  |  {"status": "error", "detail": "..."}

Stage frames are republished on the progress channel as they arrive,
tagged with the request's attempt when the service leaves it out.
Timeouts beyond the connection handshake are the service's business.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

import websockets
from pydantic import ValidationError
from websockets.exceptions import WebSocketException

from mathlens.domain.events import ProgressEvent
from mathlens.domain.session import Verification
from mathlens.domain.verification import score_verification
from mathlens.events.channel import ProgressChannel
from mathlens.services.recognition import (
    AnalysisResult,
    LatexResult,
    RecognitionServiceError,
    VerificationResult,
)

logger = logging.getLogger(__name__)


class WebSocketRecognitionService:
    """RecognitionService implementation speaking JSON over a WebSocket.

    Args:
        url: Service endpoint, e.g. ``ws://127.0.0.1:8765/recognize``.
        channel: Where streamed stage frames are published; None drops them.
        open_timeout: Seconds allowed for the connection handshake.
        connect: Connection factory (``websockets.connect`` by default).
    """

    def __init__(
        self,
        url: str,
        channel: ProgressChannel | None = None,
        open_timeout: float = 10.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._url = url
        self._channel = channel
        self._open_timeout = open_timeout
        self._connect = connect

    # ── RecognitionService ───────────────────────────────────────────────

    async def extract_latex(self, session_id: str, image: str, attempt: int = 0) -> LatexResult:
        result = await self._call(
            {"op": "latex", "id": session_id, "attempt": attempt, "image": image}
        )
        return self._parse(LatexResult, result)

    async def analyze(self, session_id: str, image: str, attempt: int = 0) -> AnalysisResult:
        result = await self._call(
            {"op": "analysis", "id": session_id, "attempt": attempt, "image": image}
        )
        return self._parse(AnalysisResult, result)

    async def verify(
        self, session_id: str, latex: str, image: str, attempt: int = 0
    ) -> VerificationResult:
        result = await self._call(
            {"op": "verify", "id": session_id, "attempt": attempt, "image": image, "latex": latex}
        )
        if result.get("confidence_score") is None and result.get("verification") is not None:
            verification = self._parse(Verification, result["verification"])
            scored = score_verification(verification)
            result = {
                **result,
                "confidence_score": scored.confidence_score,
                "verification_report": result.get("verification_report") or scored.verification_report,
            }
        return self._parse(VerificationResult, result)

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _parse(model, data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise RecognitionServiceError(f"Malformed {model.__name__} from service: {exc}") from exc

    async def _call(self, request: dict[str, Any]) -> dict[str, Any]:
        op, session_id = request["op"], request["id"]
        logger.debug("Dispatching %s for session %s", op, session_id)
        try:
            async with self._connect(self._url, open_timeout=self._open_timeout) as ws:
                await ws.send(json.dumps(request))
                async for raw in ws:
                    frame = self._decode(raw)
                    if "stage" in frame:
                        self._relay(frame, request["attempt"])
                        continue
                    status = frame.get("status")
                    if status == "ok":
                        result = frame.get("result") or {}
                        if not isinstance(result, dict):
                            raise RecognitionServiceError(f"{op}: result is not an object")
                        return result
                    if status == "error":
                        raise RecognitionServiceError(frame.get("detail") or f"{op} failed")
                    logger.debug("Ignoring unrecognised frame for %s: %s", op, sorted(frame))
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise RecognitionServiceError(f"{op}: recognition service unreachable ({exc})") from exc

        raise RecognitionServiceError(f"{op}: connection closed before a result arrived")

    @staticmethod
    def _decode(raw: str | bytes) -> dict[str, Any]:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RecognitionServiceError(f"Invalid JSON frame from service: {exc}") from exc
        if not isinstance(frame, dict):
            raise RecognitionServiceError("Service frame is not a JSON object")
        return frame

    def _relay(self, frame: dict[str, Any], attempt: int) -> None:
        if self._channel is None:
            return
        frame.setdefault("attempt", attempt)
        try:
            event = ProgressEvent.model_validate(frame)
        except ValidationError as exc:
            logger.warning("Dropping malformed progress frame: %s", exc)
            return
        self._channel.publish(event)
