"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "mathlens"
    debug: bool = False
    log_level: str = "INFO"

    # Local storage
    data_dir: Path = Path.home() / ".mathlens"
    history_filename: str = "history.json"
    state_filename: str = "ui_state.json"
    pictures_dirname: str = "pictures"

    # History cache polling
    history_poll_interval_seconds: float = 3.0

    # Notifications
    toast_timeout_seconds: float = 2.6

    # External recognition service
    recognition_service_url: str = "ws://127.0.0.1:8765/recognize"
    recognition_open_timeout_seconds: float = 10.0
    model_name: str = "gemini-2.5-flash"

    model_config = {"env_prefix": "MATHLENS_", "protected_namespaces": ()}

    @property
    def history_path(self) -> Path:
        return self.data_dir / self.history_filename

    @property
    def state_path(self) -> Path:
        return self.data_dir / self.state_filename

    @property
    def pictures_dir(self) -> Path:
        return self.data_dir / self.pictures_dirname


settings = Settings()
