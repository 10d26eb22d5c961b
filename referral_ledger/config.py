from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./referral_ledger.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Referral Ledger"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    AUTO_CREATE_TABLES: bool = False  # create_all on startup (local dev only)

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Referral Links
    LINK_BASE_URL: str = "https://qetta.com"
    SHORT_CODE_LENGTH: int = 8
    SHORT_CODE_ALPHABET: str = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    SHORT_CODE_MAX_ATTEMPTS: int = 10  # Collision retries before giving up
    DEFAULT_LINK_TTL_DAYS: int = 365

    # Attribution
    FALLBACK_ATTRIBUTION_WINDOW_DAYS: int = 7  # ip/ua match window when cookie is missing

    # Payouts
    APPROVAL_TIMEOUT_SECONDS: float = 10.0  # Serializable approval transaction bound
    ADJUSTMENT_REASON_MIN_LENGTH: int = 10

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Redis pub/sub for payout status updates
    REDIS_URL: Optional[str] = None  # e.g., "redis://localhost:6379/0"

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('SHORT_CODE_ALPHABET')
    @classmethod
    def validate_alphabet(cls, v):
        if len(set(v)) < 2:
            raise ValueError("SHORT_CODE_ALPHABET needs at least two distinct characters")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
