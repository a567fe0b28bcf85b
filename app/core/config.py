from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional, List, Union


class Settings(BaseSettings):
    # Database
    database_url: str

    # Redis (sweep lock)
    redis_url: str = "redis://localhost:6379/0"
    redis_password: Optional[str] = None
    redis_db: int = 0

    # Firebase
    firebase_project_id: str
    firebase_credentials_path: str

    # API
    api_v1_str: str = "/api/v1"
    api_base_url: Optional[str] = None

    # Environment
    environment: str = "development"
    debug: bool = True

    # CORS
    cors_origins: List[str] = ["http://localhost:5000"]

    # Scheduler
    scheduler_api_key: Optional[str] = None  # shared secret for POST /scheduler/sweep
    scheduler_timezone: str = "UTC"
    sweep_cron_hour: int = 3
    sweep_cron_minute: int = 0
    sweep_lock_timeout_seconds: int = 600

    # Price changes
    approval_window_days: int = 7
    price_change_max_apply_attempts: int = 3
    approval_token_bytes: int = 32
    inflation_threshold_percent: float = 10.0
    notification_channel: str = "whatsapp"

    @field_validator('cors_origins', mode='before')
    @classmethod
    def parse_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse CORS origins from environment variable (comma-separated) or use default list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator('approval_token_bytes')
    @classmethod
    def check_token_entropy(cls, v: int) -> int:
        if v < 32:
            raise ValueError("approval_token_bytes must be at least 32")
        return v

    @field_validator('price_change_max_apply_attempts', 'approval_window_days')
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields from environment


settings = Settings()
