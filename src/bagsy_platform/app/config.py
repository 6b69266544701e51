"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./bagsy_platform.db"

    # AI negotiation delegate
    gemini_api_key: str = ""
    negotiation_model: str = "gemini-3-flash-preview"
    delegate_response_delay_seconds: float = 3.0

    # Notifications
    sendgrid_api_key: str = ""
    notification_from_email: str = "notifications@bagsy.app"

    # CORS / Frontend
    cors_origins: str = "http://localhost:5173"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def llm_delegate_enabled(self) -> bool:
        """The negotiation delegate only consults Gemini when a key is set."""
        return bool(self.gemini_api_key)


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
