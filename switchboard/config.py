from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./switchboard.db"
    debug: bool = False
    log_level: str = "INFO"

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    ticket_ttl_seconds: int = 60

    auth_timeout_seconds: float = 10.0
    greeting_timeout_seconds: float = 5.0
    dispatch_timeout_seconds: float = 30.0
    idle_timeout_seconds: float = 300.0
    keepalive_interval_seconds: float = 60.0

    dedup_window_seconds: float = 60.0
    conversation_ttl_seconds: float = 1800.0
    conversation_history_limit: int = 20
    rate_limit_messages: int = 20
    rate_limit_window_seconds: float = 60.0

    job_max_attempts: int = 3
    job_backoff_base_seconds: float = 2.0
    job_backoff_ceiling_seconds: float = 300.0
    queue_saturation_threshold: Optional[int] = 10000
    worker_concurrency: int = 5
    worker_poll_interval_seconds: float = 0.5
    job_timeout_seconds: float = 120.0
    stalled_job_seconds: float = 600.0
    retain_completed_jobs: int = 100
    retain_failed_jobs: int = 500
    queue_config_path: Optional[str] = None

    admin_token: Optional[str] = None
    alert_bot_token: Optional[str] = None
    alert_chat_id: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1/chat/completions"
    cors_allow_origins: str = "*"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
