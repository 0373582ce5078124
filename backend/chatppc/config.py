from __future__ import annotations

from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    db_url: str = "sqlite:///./chatppc.db"

    # OpenAI (Responses API)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openai_fallback_model: str = "gpt-4o-mini"
    openai_prompt_id: str = ""        # Stored prompt template; dropped on degraded retries
    openai_prompt_version: str = ""
    # image_generation tool, attached to ChatGPT image requests
    openai_image_generation_enabled: bool = True
    openai_image_model: str = "gpt-image-1-mini"
    openai_image_fallback_model: str = "gpt-image-1"  # Used on degraded retries
    openai_image_background: str = "auto"
    openai_image_moderation: str = "low"
    openai_image_output_format: str = "png"
    openai_image_quality: str = "auto"
    openai_image_size: str = "auto"
    # Grok (xAI, OpenAI-compatible Responses API)
    grok_api_key: str = ""
    grok_base_url: str = "https://api.x.ai/v1"
    grok_model: str = "grok-4-fast-non-reasoning"
    grok_fallback_model: str = "grok-3-mini"
    provider_timeout_seconds: float = 90.0

    # GIF search
    giphy_api_key: str = ""
    giphy_base_url: str = "https://api.giphy.com/v1"
    gif_search_candidates: int = 5
    media_fetch_timeout_seconds: float = 10.0
    media_max_bytes: int = 15 * 1024 * 1024

    # Queue behaviour
    ai_queue_max_pending: int = 40
    ai_queue_max_attempts: int = 4
    tagging_queue_max_attempts: int = 4
    queue_batch_default: int = 2
    queue_batch_max: int = 20
    queue_retry_base_delay_seconds: int = 3
    queue_retry_max_delay_seconds: int = 60
    queue_stale_processing_seconds: int = 120
    queue_lock_stale_seconds: int = 300
    ai_busy_notice_cooldown_seconds: float = 5.0
    queue_drain_interval_seconds: float = 5.0  # 0 disables the in-process drain loop
    worker_token: str = ""  # Protects the HTTP worker endpoints when set

    # Behaviour events
    behavior_event_retention_days: int = 180

    @model_validator(mode="after")
    def _strip_credentials(self) -> Settings:
        self.openai_api_key = self.openai_api_key.strip()
        self.grok_api_key = self.grok_api_key.strip()
        self.giphy_api_key = self.giphy_api_key.strip()
        self.worker_token = self.worker_token.strip()
        self.openai_prompt_id = self.openai_prompt_id.strip()
        return self

    @property
    def tagging_enabled(self) -> bool:
        """Tagging runs on the Grok vision model."""
        return bool(self.grok_api_key)


@lru_cache
def get_settings() -> Settings:
    return Settings()
