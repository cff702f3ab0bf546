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
    """Nexus configuration. All values come from environment variables."""

    # Local store
    database_path: Path = Field(default=Path("data/nexus.db"))

    # Turso (hosted libSQL): remote store for signed-in users
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # HTTP
    http_timeout_seconds: float = Field(default=60.0)
    http_connect_timeout_seconds: float = Field(default=10.0)

    # Completions
    max_output_tokens: int = Field(default=8192)
    temperature: float = Field(default=0.7)
    app_title: str = Field(default="NexusAI")
    app_url: str = Field(default="http://localhost:5173")

    # Export (PDF microservice)
    export_service_url: str = Field(default="http://localhost:3001/api/generate-pdf")
    export_dir: Path = Field(default=Path("data/exports"))

    # Web grounding
    web_search_url: str = Field(default="https://api.duckduckgo.com/")

    # Remote sync
    preference_sync_debounce_seconds: float = Field(default=1.0)
    collection_sync_debounce_seconds: float = Field(default=5.0)

    # Conversation
    title_max_chars: int = Field(default=50)
    default_prompt_mode: str = Field(default="standard")

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

    @property
    def remote_sync_configured(self) -> bool:
        """True when a Turso database URL is available for the remote store."""
        return bool(self.turso_database_url.strip())


settings = Settings()
