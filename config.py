import os
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = ""
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # Connection pool (non-SQLite databases only)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600

    ENVIRONMENT: str = "development"
    ALLOWED_ORIGINS: str = "*"

    # Consent OTP config
    CONSENT_OTP_EXPIRY_MINUTES: int = 15
    CONSENT_OTP_MAX_ATTEMPTS: int = 3  # Block after 3 wrong codes
    CONSENT_OTP_CAS_RETRIES: int = 3  # Reload-and-retry budget when a concurrent update wins

    # Notification delivery
    NOTIFICATION_BACKEND: str = "log"  # "log" or "gateway"
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0
    SMS_GATEWAY_URL: Optional[str] = None
    SMS_GATEWAY_API_KEY: Optional[str] = None
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM_EMAIL: str = "no-reply@example.com"

    # IP rate limiting on OTP verification
    RATE_LIMIT_BACKEND: str = "memory"  # "memory" or "redis"
    VERIFY_OTP_MAX_ATTEMPTS_PER_IP: int = 10  # 10 attempts per window per IP
    VERIFY_OTP_WINDOW_SECONDS: int = 3600  # 1 hour

    # Redis configuration (rate limiter backend)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_USERNAME: Optional[str] = None
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DB: int = 0

    model_config = SettingsConfigDict(
        # Use absolute path to make sure .env is found
        env_file=os.path.join(os.path.dirname(__file__), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def allowed_origins_list(self) -> list:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


settings = Settings()
