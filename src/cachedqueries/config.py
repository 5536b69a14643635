from __future__ import annotations

from uuid import uuid4

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CACHEDQUERIES_", env_file=".env", extra="ignore")

    # Instance ID for lock ownership and broadcast origin
    instance_id: str = Field(default_factory=lambda: str(uuid4())[:8])

    # Backends: memory | redis (store), memory | redis | null (locks)
    store_backend: str = "memory"
    lock_backend: str = "memory"

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")

    # Cache entries (seconds)
    default_cache_duration: float = 8 * 60 * 60

    # Stampede protection (seconds)
    lock_timeout: float = 5.0
    lock_poll_interval: float = 0.05

    # Reserved key prefixes; cache keys are uppercase hex and never start with these
    tag_prefix: str = "cachedqueries:tag:"
    lock_prefix: str = "cachedqueries:lock:"

    # Cross-instance invalidation
    broadcast_invalidations: bool = False
    invalidation_channel: str = "cachedqueries:invalidation"

    # Observability
    log_level: str = "INFO"
    log_json: bool = True


settings = Settings()
