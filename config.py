import os
from pydantic import model_validator
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    # Application Settings
    APP_NAME: str = "Ledgerline Settlement API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"

    # Database Settings
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", "3306"))
    DB_USER: str = os.getenv("DB_USER", "ledgerline")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "")
    DB_NAME: str = os.getenv("DB_NAME", "ledgerline")
    # Full SQLAlchemy URL, overrides the MySQL settings above (e.g. sqlite:// in tests)
    DB_URL: Optional[str] = None

    # Redis cache (optional)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_ENABLED: bool = False
    WALLET_CACHE_TTL: int = 30

    # CORS Settings
    CORS_ORIGINS: List[str] = ["*"]

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Rider pay (currency units)
    RIDER_BASE_PAY: int = 60
    RIDER_PER_KM_RATE: int = 20
    RIDER_PAY_CAP: int = 200
    FALLBACK_DISTANCE_KM: float = 2.0

    # Commission & fees
    DEFAULT_COMMISSION_RATE: float = 10.0   # percent of subtotal
    GATEWAY_FEE_PERCENT: float = 2.5        # prepaid orders only

    # Daily rider bonus
    BONUS_TARGET_DELIVERIES: int = 10
    BONUS_AMOUNT: int = 200

    # COD debt thresholds
    COD_OVERDUE_THRESHOLD: int = 5000
    COD_OVERDUE_DAYS: int = 2
    COD_BLOCK_THRESHOLD: int = 15000

    # Background reconciliation
    RECONCILE_WORKER_ENABLED: bool = True
    RECONCILE_INTERVAL_SECONDS: int = 60 * 60

    class Config:
        env_file = ".env"
        case_sensitive = True

    @model_validator(mode="after")
    def check_pay_rules(self):
        if self.RIDER_BASE_PAY < 0 or self.RIDER_PER_KM_RATE < 0:
            raise ValueError("Rider pay constants must be non-negative")
        if self.RIDER_BASE_PAY > self.RIDER_PAY_CAP:
            raise ValueError("RIDER_BASE_PAY cannot exceed RIDER_PAY_CAP")
        if not 0 <= self.DEFAULT_COMMISSION_RATE <= 100:
            raise ValueError("DEFAULT_COMMISSION_RATE must be between 0 and 100")
        if self.COD_OVERDUE_THRESHOLD > self.COD_BLOCK_THRESHOLD:
            raise ValueError("COD_OVERDUE_THRESHOLD cannot exceed COD_BLOCK_THRESHOLD")
        return self

    @property
    def DATABASE_URL(self) -> str:
        if self.DB_URL:
            return self.DB_URL
        return f"mysql+pymysql://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
