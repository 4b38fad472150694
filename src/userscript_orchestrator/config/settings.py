"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "userscript-orchestrator"
    app_debug: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = Field(default=8000, ge=1, le=65535)
    storage_backend: str = "memory"
    database_url: str = ""
    llm_model: str = "gpt-4o"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=120.0, ge=0.5)
    llm_max_retries: int = Field(default=0, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    llm_trace: bool = False
    openai_api_key: str = ""
    title_generation_enabled: bool = True
    title_model: str = "gpt-4.1-mini"
    markup_char_budget: int = Field(default=100_000, ge=1_000)
    console_log_max_chars: int = Field(default=10_000, ge=0)
    cancel_confirm_window_s: float = Field(default=0.5, ge=0.0)
    page_headless: bool = True
    page_timeout_ms: int = Field(default=15_000, ge=100)

    model_config = SettingsConfigDict(
        env_prefix="USERSCRIPT_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
