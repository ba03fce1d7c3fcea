"""
Configuration Settings.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Runtime settings for the chat session core."""

    # App info
    app_name: str = "Persona Chat"
    app_version: str = "1.0.0"
    debug: bool = False

    # Backend HTTP service
    api_base_url: str = "http://localhost:8000/api"
    request_timeout: float = 120.0  # seconds, applies to the whole stream read
    api_key: Optional[str] = None  # sent as a bearer token when set

    # Generic request retries
    api_max_retries: int = 3
    api_retry_delay_ms: float = 1000.0
    api_backoff_multiplier: float = 2.0

    # Streaming reconnection
    stream_max_retries: int = 5
    stream_retry_delay_ms: float = 2000.0
    stream_backoff_multiplier: float = 1.5

    # Memory cleanup side cache
    memory_max_sessions: int = 10
    memory_max_messages_per_session: int = 10
    memory_max_age_seconds: float = 24 * 60 * 60  # 24 hours
    memory_cleanup_interval_seconds: float = 5 * 60  # 5 minutes

    # Message list rendering
    virtualization_threshold: int = 50
    item_height: int = 120  # px per row when windowed
    overscan_count: int = 5
    viewport_height: int = 600

    # Logging configuration
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_file_path: str = "./logs/persona_chat.log"
    log_file_enabled: bool = False
    log_console_enabled: bool = True
    log_json_format: bool = True  # JSON format for files, human-readable for console
    log_http_requests: bool = True  # Log every backend request/response

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
