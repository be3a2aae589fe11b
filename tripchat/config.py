"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("tripchat.config")


class Settings(BaseSettings):
    # Hosted data collaborator (REST + realtime + auth)
    data_backend: str = "hosted"  # "hosted" or "memory"
    data_url: str = ""
    data_anon_key: str = ""
    http_timeout_seconds: float = 15.0
    realtime_heartbeat_seconds: float = 30.0

    # Chat window
    chat_window_hours: int = 24
    countdown_interval_seconds: float = 60.0
    # Sends after expiry are accepted unless this is on
    enforce_chat_expiry: bool = False

    # Proposals
    require_match: bool = False

    # hidden_by compare-and-swap attempts before giving up
    hide_retry_limit: int = 5

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"https://your-project.example.co", "your-anon-key"}

        if self.data_backend not in {"hosted", "memory"}:
            raise ValueError(
                f"DATA_BACKEND must be 'hosted' or 'memory', got {self.data_backend!r}."
            )

        if self.data_backend == "hosted":
            if not self.data_url or self.data_url in _placeholders:
                raise ValueError(
                    "DATA_URL is missing or still a placeholder. "
                    "Set it in .env to use the hosted data service."
                )
            if not self.data_anon_key or self.data_anon_key in _placeholders:
                raise ValueError(
                    "DATA_ANON_KEY is missing or still a placeholder. "
                    "Set it in .env to use the hosted data service."
                )
        elif not self.debug:
            warnings.append(
                "DATA_BACKEND=memory outside DEBUG mode. Nothing will be persisted."
            )

        if self.chat_window_hours <= 0:
            raise ValueError("CHAT_WINDOW_HOURS must be positive.")

        if self.countdown_interval_seconds > 60:
            warnings.append(
                "COUNTDOWN_INTERVAL_SECONDS is above 60. The remaining-time "
                "label will lag behind by more than a minute."
            )

        if self.hide_retry_limit < 1:
            warnings.append("HIDE_RETRY_LIMIT below 1; using a single attempt.")

        return warnings


settings = Settings()
