"""Configuration settings for the gigledger backend."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

from gigledger.config import LedgerConfig, get_data_dir


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Ledger
    database_path: Path | None = None  # Defaults to {GIGLEDGER_DATA_DIR}/ledger.db
    currency: str = "usd"

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    gateway_timeout_seconds: float = 30.0
    gateway_max_retries: int = 3

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24  # 1 day

    # App
    debug: bool = False
    log_level: str = "INFO"
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    def ledger_config(self) -> LedgerConfig:
        """Engine configuration derived from these settings."""
        return LedgerConfig(
            db_path=self.database_path or get_data_dir() / "ledger.db",
            currency=self.currency,
            gateway_timeout_seconds=self.gateway_timeout_seconds,
            gateway_max_retries=self.gateway_max_retries,
            stripe_secret_key=self.stripe_secret_key,
            stripe_webhook_secret=self.stripe_webhook_secret,
            log_level=self.log_level,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
