"""Configuration settings for Post Orchestrator."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Engine
    worker_concurrency: int = 4
    conflict_retry_limit: int = 3

    # Retry backoff: min(base * 2**attempt, cap)
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 60000

    # Capability call bounds
    generation_timeout_seconds: float = 120.0
    publish_timeout_seconds: float = 60.0
    notify_timeout_seconds: float = 10.0

    # Storage. None keeps everything in memory.
    db_path: Optional[str] = None

    # External collaborators
    publisher_base_url: str = "http://127.0.0.1:9100"
    push_gateway_url: Optional[str] = None

    # Devices seen within this window count as online
    device_online_window_seconds: int = 300

    # API Server
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    log_level: str = "INFO"

    class Config:
        env_prefix = "POST_ORCHESTRATOR_"
        env_file = ".env"

    @property
    def retry_base_delay(self) -> float:
        return self.retry_base_delay_ms / 1000

    @property
    def retry_max_delay(self) -> float:
        return self.retry_max_delay_ms / 1000


settings = Settings()
