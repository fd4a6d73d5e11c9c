"""mathlens — formula image recognition orchestration.

This is the application entry point.  It wires the progress channel,
the phase listeners, the result store, the history cache and the
recognition orchestrator to the REST and WebSocket endpoints.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from mathlens.api.history import create_history_router
from mathlens.api.recognition import create_recognition_router
from mathlens.api.ws_progress import ProgressRelay, create_progress_router
from mathlens.config import Settings, settings
from mathlens.core.history_actions import HistoryActions
from mathlens.core.listeners import PersistingPhaseListener
from mathlens.core.orchestrator import RecognitionOrchestrator
from mathlens.events.channel import ProgressChannel
from mathlens.services.notifications import NotificationCenter
from mathlens.services.recognition import RecognitionService
from mathlens.services.remote import WebSocketRecognitionService
from mathlens.store.history_cache import HistoryCache
from mathlens.store.history_repository import HistoryRepository
from mathlens.store.local_state import LocalStateStore
from mathlens.store.phase_persistence import PhaseStatePersistence
from mathlens.store.result_store import ActiveResultStore

# ── Logging ──────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)


def create_app(
    config: Settings = settings,
    service: RecognitionService | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        config: Settings to use (the environment-loaded ones by default).
        service: Recognition service override; defaults to the WebSocket
            client pointed at ``config.recognition_service_url``.
    """

    # ── State ────────────────────────────────────────────────────────────

    channel = ProgressChannel()
    result_store = ActiveResultStore()
    notifications = NotificationCenter(default_timeout=config.toast_timeout_seconds)
    repository = HistoryRepository(config.history_path, pictures_dir=config.pictures_dir)
    history_cache = HistoryCache(
        repository.get_all,
        poll_interval=config.history_poll_interval_seconds,
    )
    history_actions = HistoryActions(repository, history_cache, result_store)

    # Application-scoped listener: survives restarts through local state.
    app_listener = PersistingPhaseListener(
        PhaseStatePersistence(LocalStateStore(config.state_path)),
    )
    app_listener.attach(channel)

    # ── Recognition ──────────────────────────────────────────────────────

    if service is None:
        service = WebSocketRecognitionService(
            config.recognition_service_url,
            channel=channel,
            open_timeout=config.recognition_open_timeout_seconds,
        )
    orchestrator = RecognitionOrchestrator(
        service,
        channel,
        result_store,
        history_cache=history_cache,
        repository=repository,
        notifications=notifications,
        model_name=config.model_name,
    )
    relay = ProgressRelay(channel)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        relay.start()
        await history_cache.initialize()
        logger.info("%s ready (history: %d item(s))", config.app_name, len(history_cache))
        try:
            yield
        finally:
            history_cache.destroy()
            relay.stop()
            orchestrator.close()
            app_listener.detach()

    # ── App ──────────────────────────────────────────────────────────────

    app = FastAPI(
        title=config.app_name,
        description="Formula image recognition: phase orchestration and history cache",
        version="0.3.0",
        lifespan=lifespan,
    )
    app.state.channel = channel
    app.state.result_store = result_store
    app.state.history_cache = history_cache
    app.state.repository = repository
    app.state.orchestrator = orchestrator
    app.state.notifications = notifications
    app.state.app_listener = app_listener

    # ── Routes ───────────────────────────────────────────────────────────

    app.include_router(create_recognition_router(
        orchestrator,
        result_store,
        history_cache,
        history_actions,
        notifications,
        app_listener=app_listener,
    ))
    app.include_router(create_history_router(history_cache, history_actions))
    app.include_router(create_progress_router(relay))

    # ── Health ───────────────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "session_id": orchestrator.session_id,
            "phases": orchestrator.phases.to_record(),
            "dispatching": orchestrator.has_pending_dispatches,
            "history_items": len(history_cache),
            "history_polling": history_cache.is_polling,
            "listeners": channel.listener_count,
            "progress_clients": relay.client_count,
        }

    return app


app = create_app()
