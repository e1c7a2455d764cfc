"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Tutor chat engine configuration. All values come from environment variables."""

    # Backend API
    api_base_url: str = Field(default="http://localhost:3000")
    api_token: str = Field(default="")
    chat_path: str = Field(default="/api/chat")
    conversations_path: str = Field(default="/api/conversations")
    request_timeout: float = Field(default=60.0)

    # Persistence
    persistence_backend: str = Field(default="http")  # "http" or "sqlite"
    database_path: Path = Field(default=Path("data/conversations.db"))
    save_debounce_seconds: float = Field(default=1.0)

    # Retry for conversation loads
    load_max_retries: int = Field(default=2)
    retry_initial_delay: float = Field(default=0.5)
    retry_max_delay: float = Field(default=5.0)

    # Chat
    default_mode: str = Field(default="explanation")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_auth_headers(self) -> dict[str, str]:
        """Return the Authorization header for backend requests, if a token is set."""
        if not self.api_token.strip():
            return {}
        return {"Authorization": f"Bearer {self.api_token.strip()}"}

    def chat_url(self) -> str:
        """Absolute URL of the generation endpoint."""
        return self.api_base_url.rstrip("/") + self.chat_path

    def conversations_url(self) -> str:
        """Absolute URL of the conversation persistence endpoint."""
        return self.api_base_url.rstrip("/") + self.conversations_path


settings = Settings()
