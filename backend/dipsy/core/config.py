"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    dipsy_db_path: str = "./data/dipsy.db"
    # `token:user_id` comma-separated; tenant comes from memberships, never from the token.
    api_tokens: str = ""

    # LLM
    openai_api_key: str = ""
    openai_base_url: str | None = None
    dipsy_model: str = "gpt-4.1-mini"
    dipsy_temperature: float = 0.1
    dipsy_max_tokens: int = 700
    dipsy_max_iterations: int = 5
    dipsy_history_turns: int = 10
    dipsy_request_timeout_seconds: float = 30.0
    dipsy_completion_retries: int = 1

    # HOS-aware ranking service (optional; local ranking when unset)
    hos_ranking_url: str = ""
    hos_ranking_token: str = ""
    hos_ranking_timeout_seconds: float = 10.0

    # Telegram
    telegram_bot_token: str = ""
    telegram_webhook_secret: str = ""
    telegram_api_base: str = "https://api.telegram.org"

    # WhatsApp Cloud API
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    whatsapp_api_base: str = "https://graph.facebook.com/v19.0"

    def resolved_openai_api_key(self) -> str | None:
        """
        Resolve API key for OpenAI-compatible clients.

        Local endpoints (e.g. Ollama) often do not require a real key, but the
        OpenAI SDK still expects a non-empty value.
        """
        key = (self.openai_api_key or "").strip()
        if key and key != "sk-your-key-here":
            return key
        if self._is_local_base_url():
            return "local-dev"
        return None

    def _is_local_base_url(self) -> bool:
        if not self.openai_base_url:
            return False
        try:
            host = (urlparse(self.openai_base_url).hostname or "").lower()
        except ValueError:
            return False
        return host in {"localhost", "127.0.0.1", "::1"} or host.endswith(".local")

    def telegram_enabled(self) -> bool:
        return bool((self.telegram_bot_token or "").strip())

    def whatsapp_enabled(self) -> bool:
        return bool((self.whatsapp_access_token or "").strip() and (self.whatsapp_phone_number_id or "").strip())


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
