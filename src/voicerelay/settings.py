from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")

    redis_url: str | None = "redis://localhost:6379/0"

    # Correlation store
    correlation_key_prefix: str = "correlation:"
    record_ttl_seconds: int = 3600  # 1 hour
    correlation_write_if_absent: bool = False

    # Work channel
    queue_name: str = "voicerelay:workitems"
    max_deliveries: int = 5

    # Gateway; the voice platform gives up after ~8 seconds
    poll_timeout_seconds: float = 7.0
    recall_poll_timeout_seconds: float = 2.5
    poll_interval_seconds: float = 0.5

    # Worker
    worker_batch_size: int = 10
    worker_wait_seconds: int = 20

    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    openai_api_key: str | None = None
    openai_api_key_file: Path | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    completion_timeout_seconds: float = 60.0

    system_instruction: str = (
        "You are an expert voice based AI assistant. keep your responses succint"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
