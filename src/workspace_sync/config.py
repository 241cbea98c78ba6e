from __future__ import annotations

from typing import ClassVar, final

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Backend item API
    api_base_url: str = "http://localhost:3001"
    api_timeout_seconds: float = 15.0
    # Sent as X-User-Id on every backend request.
    user_id: str = "user-001"

    # AI generation collaborator
    ai_base_url: str = "http://localhost:3001"
    ai_timeout_seconds: float = 120.0
    ai_default_model: str = "gpt-4o-mini"

    # Durable local storage for the offline operation log.
    database_url: str = "sqlite:///./.data/workspace_sync.db"
    queue_storage_key: str = "offline_queue"
    queue_max_operations: int = 100

    # Client-minted ids carry this prefix until the server assigns a real id.
    temp_id_prefix: str = "temp-"

    # Move/reorder contention handling (deadlocks, unique order index collisions).
    move_retry_max_attempts: int = 3
    move_retry_backoff_min_ms: int = 50
    move_retry_backoff_max_ms: int = 200

    # Sync engine
    sync_recheck_on_new_operations: bool = True
    sync_idle_interval_seconds: float = 30.0
    connectivity_settle_seconds: float = 1.0
    post_move_resync_delay_seconds: float = 0.2
    # If true, every mutation is queued and pushed by the sync engine in batches
    # instead of being written through to the backend immediately.
    batch_mode: bool = False

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _validate_retry_settings(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        errors: list[str] = []
        if self.move_retry_max_attempts < 1:
            errors.append("MOVE_RETRY_MAX_ATTEMPTS must be >= 1")
        if self.move_retry_backoff_min_ms < 0:
            errors.append("MOVE_RETRY_BACKOFF_MIN_MS must be >= 0")
        if self.move_retry_backoff_max_ms <= self.move_retry_backoff_min_ms:
            errors.append("MOVE_RETRY_BACKOFF_MAX_MS must be greater than MOVE_RETRY_BACKOFF_MIN_MS")
        if self.queue_max_operations < 1:
            errors.append("QUEUE_MAX_OPERATIONS must be >= 1")
        if not self.temp_id_prefix.strip():
            errors.append("TEMP_ID_PREFIX must not be empty")
        if errors:
            raise ValueError("Invalid settings: " + "; ".join(errors))
        return self


_ = Settings._validate_retry_settings


settings = Settings()
