from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


ROOT_DIR = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(
            ".env",
            str(ROOT_DIR / ".env"),
            str(ROOT_DIR / "apps" / "api" / ".env"),
        ),
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "LessonForge Generation API"
    environment: str = "development"
    log_level: str = "INFO"

    llm_provider: str = "mock"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    openai_timeout_seconds: float = 60.0
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"
    llm_max_retries: int = 2
    llm_retry_backoff_seconds: float = 1.0
    planner_max_tokens: int = 4096
    repair_max_tokens: int = 4096

    image_provider: str = "mock"
    image_model: str = "dall-e-3"
    image_timeout_seconds: float = 90.0
    image_max_retries: int = 1
    image_retry_delay_seconds: float = 2.0
    image_batch_delay_seconds: float = 0.5
    image_cache_max_entries: int = 1000

    def is_production(self) -> bool:
        return self.environment.lower().strip() in {"production", "prod"}


def _clean_api_key(value: str) -> str:
    cleaned = value.strip().strip('"').strip("'")
    if cleaned.lower().startswith("bearer "):
        cleaned = cleaned.split(" ", 1)[1].strip()
    return cleaned


def load_settings(**overrides) -> Settings:
    loaded = Settings(**overrides)
    if loaded.openai_api_key:
        loaded.openai_api_key = _clean_api_key(loaded.openai_api_key)
    return loaded


settings = load_settings()
