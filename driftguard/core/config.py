from pydantic_settings import BaseSettings
from pydantic import ConfigDict, computed_field, Field
from typing import List, Optional


class Settings(BaseSettings):
    model_config = ConfigDict(extra="allow", env_file=".env", case_sensitive=True)

    DEBUG: bool = False
    PROJECT_NAME: str = "DriftGuard"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api"
    ENVIRONMENT: str = "development"
    ENABLE_TRACING: bool = False
    OTLP_ENDPOINT: str = "localhost:4317"

    DATABASE_URL: str = "sqlite:///./driftguard.db"

    # Drift Detection settings
    DRIFT_SCAN_INTERVAL: int = Field(
        default=1800,  # 30 minutes
        description="Drift scan interval in seconds"
    )
    DRIFT_HISTORY_LIMIT: int = Field(
        default=1000,
        description="Number of drift results kept in memory"
    )
    DRIFT_ROOT_DIR: str = "."
    DRIFT_WATCHED_PATHS: List[str] = [
        ".env",
        ".env.local",
        ".env.production",
        "config/default.json",
        "config/production.json",
        "config/development.json",
        "pyproject.toml",
        "docker-compose.yml",
        "Dockerfile",
        "nginx.conf",
        "ssl.conf",
    ]
    DRIFT_EXCLUDED_PATHS: List[str] = []
    DRIFT_FILE_CHANGE_DEBOUNCE: float = 5.0

    # Alerting settings
    CORRELATION_SWEEP_INTERVAL: int = 60
    CORRELATION_WINDOW_MINUTES: int = 30
    ATTACK_PATTERN_THRESHOLD: int = 5
    ALERT_HISTORY_LIMIT: int = 10000

    # Audit ledger settings
    AUDIT_LOG_DIR: str = "logs/audit"
    AUDIT_SECRET_KEY: Optional[str] = Field(
        default=None,
        description="HMAC key for audit entry signatures (random per process when unset)"
    )
    AUDIT_BATCH_SIZE: int = 100
    AUDIT_FLUSH_INTERVAL: float = 5.0
    AUDIT_MAX_MEMORY_ENTRIES: int = 10000
    AUDIT_MAINTENANCE_INTERVAL: int = 3600
    AUDIT_ARCHIVE_AFTER_DAYS: int = 90

    # Notification Settings
    NOTIFICATION_TIMEOUT: float = 10.0
    RESPONSE_ACTION_TIMEOUT: float = 30.0
    WEBHOOK_URL: Optional[str] = Field(
        default=None,
        description="Webhook URL for alert notifications"
    )
    ALERT_EMAIL: Optional[str] = Field(
        default=None,
        description="Email address for alert notifications"
    )
    SMTP_HOST: Optional[str] = Field(
        default=None,
        description="SMTP relay for email notifications; email is disabled when unset"
    )
    SMTP_PORT: int = 25
    SMTP_SENDER: str = "driftguard@localhost"
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None

    @computed_field
    @property
    def ASYNC_DATABASE_URL(self) -> str:
        """Database URL with the async sqlite driver"""
        return self.DATABASE_URL.replace("sqlite:///", "sqlite+aiosqlite:///")


settings = Settings()
