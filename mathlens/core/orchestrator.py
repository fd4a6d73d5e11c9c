"""RecognitionOrchestrator — dispatches the three stages and handles retry.

Flow for one recognition:
    1. acquire the image from an ImageSource
    2. reset the active result to a placeholder and publish RecognitionStarted
    3. dispatch ``latex`` and ``analysis`` concurrently
    4. when this orchestrator's listener sees verify leave idle (latex
       completed), dispatch ``verify`` with the LaTeX and the image
    5. once nothing is pending and latex is done, save the session to
       the durable history

Events published by the service are the primary source of truth.  When
a call returns and the channel never delivered that stage's completion,
an equivalent event is built from the return value and published.

Dispatched calls cannot be cancelled.  Each dispatch is numbered by
(session id, stage attempt); a retry starts the next attempt of its
stage.  A call that settles after its session or attempt was superseded
is discarded, both its result and its failure.  A stage whose call
never returns stays pending.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional

from mathlens.core.listeners import ResultListener
from mathlens.domain.enums import PhaseStatus, Stage, ToastType
from mathlens.domain.events import (
    ChannelMessage,
    ProgressEvent,
    RecognitionStarted,
    StageFailed,
    StageRetrying,
)
from mathlens.domain.phase import PhaseState, PhaseTrack
from mathlens.domain.session import HistoryRecord, RecognitionSession
from mathlens.events.channel import ProgressChannel
from mathlens.foundation.clock import utc_now_iso
from mathlens.foundation.identifiers import new_session_id
from mathlens.services.image_sources import to_data_url
from mathlens.services.notifications import NotificationCenter
from mathlens.services.recognition import (
    ImageAcquisitionError,
    ImageSource,
    RecognitionService,
)
from mathlens.store.history_cache import HistoryCache
from mathlens.store.history_repository import HistoryRepository
from mathlens.store.result_store import ActiveResultStore

logger = logging.getLogger(__name__)

_STAGE_LABELS = {
    Stage.LATEX: "LaTeX recognition",
    Stage.ANALYSIS: "Analysis",
    Stage.VERIFY: "Verification",
}


class RetryUnavailableError(Exception):
    """Raised when a stage cannot be retried with what is cached."""


class RecognitionOrchestrator:
    """Owns dispatch, gating and retry for the active recognition.

    Args:
        service: The external recognition service.
        channel: Progress channel shared with every other listener.
        result_store: Active result patched by this orchestrator's listener.
        history_cache: Receives completed stages; may be None.
        repository: Durable history the finished session is saved to; may be None.
        notifications: Receives a toast for every dispatch failure; may be None.
        model_name: Recorded on sessions when the service does not report one.
    """

    def __init__(
        self,
        service: RecognitionService,
        channel: ProgressChannel,
        result_store: ActiveResultStore,
        history_cache: HistoryCache | None = None,
        repository: HistoryRepository | None = None,
        notifications: NotificationCenter | None = None,
        model_name: Optional[str] = None,
    ) -> None:
        self._service = service
        self._channel = channel
        self._result_store = result_store
        self._history_cache = history_cache
        self._repository = repository
        self._notifications = notifications
        self._model_name = model_name

        self._source: ImageSource | None = None
        self._image: str | None = None
        self._created_at: str = ""
        self._tasks: set[asyncio.Task] = set()

        self._listener = ResultListener(
            result_store,
            history_cache,
            transition_hook=self._on_transition,
            name="orchestrator",
        )
        self._listener.attach(channel)

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def phases(self) -> PhaseState:
        return self._listener.phases

    @property
    def session_id(self) -> str:
        return self._listener.session_id

    @property
    def has_pending_dispatches(self) -> bool:
        return bool(self._tasks)

    # ── Public API ───────────────────────────────────────────────────────

    async def recognize(self, source: ImageSource) -> str:
        """Start a new recognition from *source* and return its session id.

        Returns as soon as ``latex`` and ``analysis`` are dispatched.

        Raises:
            ImageAcquisitionError: If the source cannot produce an image.
        """
        self._source = source
        self._result_store.start()
        try:
            image = await source.acquire()
        except ImageAcquisitionError as exc:
            self._report_error(f"Could not acquire image: {exc}")
            raise

        session_id = new_session_id()
        self._image = image
        self._created_at = utc_now_iso()
        self._result_store.set_current_image(image)
        self._result_store.set_result(RecognitionSession.placeholder())
        self._channel.publish(RecognitionStarted(session_id=session_id))
        logger.info("Recognition %s started from %r", session_id, source)

        self._spawn(self._run_latex(session_id, image))
        self._spawn(self._run_analysis(session_id, image))
        return session_id

    async def retry(self, stage: Stage) -> None:
        """Re-run one stage without disturbing its siblings.

        Retrying ``latex`` re-runs the whole acquisition as a new
        recognition.  ``analysis`` reuses the cached image; ``verify``
        reuses the cached LaTeX and image.  Both clear the visible error.

        Raises:
            RetryUnavailableError: If nothing is cached to retry with.
        """
        if stage is Stage.LATEX:
            if self._source is None:
                raise RetryUnavailableError("No previous acquisition to repeat")
            await self.recognize(self._source)
            return

        session_id = self.session_id
        if not session_id or self._image is None:
            raise RetryUnavailableError("No active recognition to retry")

        if stage is Stage.ANALYSIS:
            attempt = self._announce_retry(session_id, stage)
            await self._run_analysis(session_id, self._image, attempt)
            return

        session = self._result_store.result
        latex = session.latex if session is not None else ""
        if self.phases.latex is not PhaseStatus.DONE or not latex:
            raise RetryUnavailableError("Verification needs a recognised LaTeX result")
        attempt = self._announce_retry(session_id, stage)
        await self._run_verify(session_id, latex, self._image, attempt)

    async def wait_settled(self) -> None:
        """Wait until every dispatched call (including follow-ups) returned."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        self._listener.detach()

    # ── Dispatch ─────────────────────────────────────────────────────────

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _announce_retry(self, session_id: str, stage: Stage) -> int:
        attempt = self._listener.track.attempts.get(stage) + 1
        self._result_store.clear_error()
        self._channel.publish(StageRetrying(session_id=session_id, stage=stage, attempt=attempt))
        logger.info("Retrying %s for session %s (attempt %d)", stage.value, session_id, attempt)
        return attempt

    def _is_current(self, session_id: str, stage: Stage, attempt: int) -> bool:
        track = self._listener.track
        return session_id == track.session_id and attempt == track.attempts.get(stage)

    async def _run_latex(self, session_id: str, image: str) -> None:
        try:
            result = await self._service.extract_latex(session_id, image, attempt=0)
        except Exception as exc:
            self._fail(session_id, Stage.LATEX, 0, exc)
        else:
            event = result.to_event(session_id, attempt=0)
            self._publish_fallback(ProgressEvent.model_validate({
                **event.model_dump(exclude_unset=True),
                **self._latex_metadata(event),
            }))
        await self._on_dispatch_returned(session_id, Stage.LATEX, 0)

    async def _run_analysis(self, session_id: str, image: str, attempt: int = 0) -> None:
        try:
            result = await self._service.analyze(session_id, image, attempt=attempt)
        except Exception as exc:
            self._fail(session_id, Stage.ANALYSIS, attempt, exc)
        else:
            self._publish_fallback(result.to_event(session_id, attempt=attempt))
        await self._on_dispatch_returned(session_id, Stage.ANALYSIS, attempt)

    async def _run_verify(self, session_id: str, latex: str, image: str, attempt: int = 0) -> None:
        try:
            result = await self._service.verify(session_id, latex, image, attempt=attempt)
        except Exception as exc:
            self._fail(session_id, Stage.VERIFY, attempt, exc)
        else:
            self._publish_fallback(result.to_event(session_id, attempt=attempt))
        await self._on_dispatch_returned(session_id, Stage.VERIFY, attempt)

    def _latex_metadata(self, event: ProgressEvent) -> dict[str, Any]:
        metadata: dict[str, Any] = {"created_at": self._created_at}
        if self._image is not None:
            metadata["original_image"] = to_data_url(self._image)
        if event.model_name is None and self._model_name:
            metadata["model_name"] = self._model_name
        return metadata

    def _publish_fallback(self, event: ProgressEvent) -> None:
        attempt = event.attempt or 0
        if not self._is_current(event.id, event.stage.stage, attempt):
            logger.info(
                "Discarding late %s result for superseded dispatch %s/%d",
                event.stage.value, event.id, attempt,
            )
            return
        if self._channel.has_delivered(event.id, event.stage, attempt):
            return
        logger.debug("No %s event seen for %s; publishing call result", event.stage.value, event.id)
        self._channel.publish(event)

    def _fail(self, session_id: str, stage: Stage, attempt: int, exc: Exception) -> None:
        if not self._is_current(session_id, stage, attempt):
            logger.info(
                "Ignoring %s failure for superseded dispatch %s/%d: %s",
                stage.value, session_id, attempt, exc,
            )
            return
        logger.warning("%s failed for session %s: %s", stage.value, session_id, exc)
        self._channel.publish(
            StageFailed(session_id=session_id, stage=stage, message=str(exc), attempt=attempt)
        )
        self._report_error(f"{_STAGE_LABELS[stage]} failed: {exc}")

    def _report_error(self, message: str) -> None:
        self._result_store.set_error(message)
        if self._notifications is not None:
            self._notifications.show(message, ToastType.ERROR)

    def _on_transition(self, before: PhaseTrack, after: PhaseTrack, message: ChannelMessage) -> None:
        unblocked = (
            before.session_id == after.session_id
            and before.phases.verify is PhaseStatus.IDLE
            and after.phases.verify is PhaseStatus.PENDING
        )
        if unblocked and isinstance(message, ProgressEvent) and message.latex and self._image is not None:
            logger.debug("Verification unblocked for %s", after.session_id)
            self._spawn(self._run_verify(
                after.session_id,
                message.latex,
                self._image,
                after.attempts.get(Stage.VERIFY),
            ))

    # ── Settlement ───────────────────────────────────────────────────────

    async def _on_dispatch_returned(self, session_id: str, stage: Stage, attempt: int) -> None:
        if not self._is_current(session_id, stage, attempt) or not self.phases.is_settled:
            return
        self._result_store.set_loading(False)
        if self._repository is not None and self.phases.latex is PhaseStatus.DONE:
            await self._save(session_id)

    async def _save(self, session_id: str) -> None:
        session = self._result_store.result
        if session is None or session.id != session_id:
            return

        record = HistoryRecord.from_session(session)
        if not record.created_at:
            record = record.merged({"created_at": self._created_at or utc_now_iso()})
        if not record.original_image and self._image is not None:
            record = record.merged({"original_image": to_data_url(self._image)})

        try:
            await self._repository.add(record)
        except Exception as exc:
            logger.error("Saving session %s to history failed: %s", session_id, exc)
            if self._notifications is not None:
                self._notifications.show(f"Could not save to history: {exc}", ToastType.WARNING)
