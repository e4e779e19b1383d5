from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix='EVENTBOOK_',
        env_file='.env',
        env_ignore_empty=True,
        extra='ignore',
    )

    PROJECT_NAME: str = 'Eventbook'

    # Database
    DATABASE_URL: str = 'sqlite+aiosqlite:///db.sqlite3'
    DATABASE_ECHO: bool = False

    # Bearer tokens
    SECRET_KEY: SecretStr = SecretStr('change-me-in-production')
    ALGORITHM: str = 'HS256'
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # Payment gateway
    STRIPE_SECRET_KEY: SecretStr = SecretStr('')
    STRIPE_WEBHOOK_SECRET: SecretStr = SecretStr('')
    STRIPE_WEBHOOK_TOLERANCE: int = 300
    PUBLIC_BASE_URL: str = 'http://localhost:3000'

    # Inventory
    # checkout session lifetime; stripe refuses anything under 30 minutes
    HOLD_MINUTES: int = Field(default=60, ge=31)
    # orders outlive their checkout session so late completions still land
    CHECKOUT_GRACE_MINUTES: int = Field(default=10, ge=0)
    VALIDATION_WINDOW_HOURS: int = 3
    EXPIRY_SWEEP_SECONDS: int = 60

    # Logging
    LOG_LEVEL: str = 'INFO'
    LOG_DIR: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()
