from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List
from decimal import Decimal
from functools import lru_cache

from models import TransferStrategy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "Concurrent Transfer API"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Security settings
    rate_limit_per_minute: int = 30

    # CORS settings
    allowed_origins: List[str] = ["*"]
    allowed_methods: List[str] = ["GET", "POST", "OPTIONS"]
    allowed_headers: List[str] = ["*"]

    # Business logic settings
    max_transfer_amount: Decimal = Decimal("1000000.00")
    min_transfer_amount: Decimal = Decimal("0.01")
    default_strategy: TransferStrategy = TransferStrategy.pessimistic

    # Optimistic retry policy
    retry_max_attempts: int = 3
    retry_backoff_initial_seconds: float = 0.05
    retry_backoff_max_seconds: float = 1.0
    retry_backoff_jitter_seconds: float = 0.05

    # Pessimistic hold policy
    lock_timeout_seconds: float = 5.0

    # Store settings
    store_latency_seconds: float = 0.0  # simulated I/O per store call
    seed_balances: Dict[str, Decimal] = {
        "A": Decimal("100"),
        "B": Decimal("0"),
        "C": Decimal("0"),
    }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Environment-specific configurations
class DevelopmentSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"
    log_format: str = "text"
    rate_limit_per_minute: int = 100  # More lenient for development


class ProductionSettings(Settings):
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: List[str] = []  # Must be specified in production
    lock_timeout_seconds: float = 2.0


class TestingSettings(Settings):
    debug: bool = True
    log_level: str = "WARNING"  # Reduce noise in tests
    rate_limit_per_minute: int = 1000  # No rate limiting in tests
    retry_backoff_initial_seconds: float = 0.0
    retry_backoff_max_seconds: float = 0.0
    retry_backoff_jitter_seconds: float = 0.0
    lock_timeout_seconds: float = 1.0


def get_settings_for_environment(env: str = "development") -> Settings:
    """Get settings for specific environment."""
    settings_map = {
        "development": DevelopmentSettings,
        "production": ProductionSettings,
        "testing": TestingSettings,
    }

    settings_class = settings_map.get(env.lower(), Settings)
    return settings_class()
