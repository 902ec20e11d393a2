"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "ResearchHub Billing API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/researchhub"
    DATABASE_ECHO: bool = False

    # Redis (Celery broker and result backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    # CORS
    CORS_ORIGINS: list[str] = []

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Payment retries
    BILLING_MAX_RETRY_ATTEMPTS: int = 3
    BILLING_RETRY_BASE_HOURS: float = 1.0
    BILLING_RETRY_BATCH_SIZE: int = 50

    # Gateway charge endpoint (normalized, processor-agnostic)
    BILLING_GATEWAY_URL: str = ""
    BILLING_GATEWAY_API_KEY: Optional[str] = None
    BILLING_GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Pending payments older than this are expired by the sweep
    BILLING_PENDING_TIMEOUT_MINUTES: int = 60

    # Manual (bank transfer) credit path
    BILLING_MANUAL_PLAN_DAYS: int = 30
    BILLING_CREDITS_PER_UNIT: float = 1.0
    BILLING_BANK_DETAILS: dict[str, dict[str, str]] = {
        "SAR": {
            "account_name": "ResearchHub Platform",
            "account_number": "",
            "bank_name": "",
            "iban": "",
        },
        "USD": {
            "account_name": "ResearchHub Platform",
            "account_number": "",
            "bank_name": "",
            "iban": "",
            "swift_code": "",
        },
    }

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
