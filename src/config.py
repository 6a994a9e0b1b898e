"""
Runtime configuration for the rules pipeline, read from the environment
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings shared by the API, the worker and the scheduler.

    Each field is read from the upper-cased environment variable of the same
    name (DATABASE_URL, MESSAGE_LOCK_TTL_SECONDS, ...). Empty values keep the default.
    """

    model_config = SettingsConfigDict(env_ignore_empty=True, extra='ignore')

    database_url: str = 'sqlite:///inbox_rules.db'
    redis_url: str = 'redis://localhost:6379/0'
    log_level: str = 'INFO'

    anthropic_api_key: Optional[str] = None
    ai_model: str = 'claude-haiku-4-5-20251001'
    ai_max_tokens: int = 1024
    ai_max_body_chars: int = Field(default=2000, ge=100)
    ai_timeout_seconds: int = Field(default=60, ge=1)

    # Per-account queues stay small so two webhooks for one mailbox never race
    account_queue_parallelism: int = Field(default=1, ge=1, le=3)
    task_timeout_seconds: int = Field(default=120, ge=1)
    max_task_attempts: int = Field(default=5, ge=1)
    retry_backoff_seconds: int = Field(default=10, ge=0)
    message_lock_ttl_seconds: int = Field(default=60, ge=1)

    draft_stale_days: int = Field(default=3, ge=1)
    resync_window_days: int = Field(default=1, ge=1)
    resync_max_messages: int = Field(default=50, ge=1)
    webhook_timeout_seconds: int = Field(default=10, ge=1)
    digest_tick_seconds: int = Field(default=60, ge=1)

    rules_file: str = 'config/rules.json'
    gmail_client_id: Optional[str] = None
    gmail_client_secret: Optional[str] = None
    gmail_token_uri: str = 'https://oauth2.googleapis.com/token'
    outlook_client_state: Optional[str] = None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
