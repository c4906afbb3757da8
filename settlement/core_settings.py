from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "settlement"
    POSTGRES_USER: str = "settlement"
    POSTGRES_PASSWORD: str = "settlement"
    # Overrides the POSTGRES_* parts when set
    DATABASE_URL: Optional[str] = None
    REDIS_URL: Optional[str] = None

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    CHECKOUT_SUCCESS_URL: str = "http://localhost:3000/book/success?session_id={CHECKOUT_SESSION_ID}"
    CHECKOUT_CANCEL_URL: str = "http://localhost:3000/book/checkout"
    PROCESSOR_TIMEOUT_SECONDS: float = 10.0
    PROCESSOR_MAX_RETRIES: int = 2

    CURRENCY: str = "gbp"
    ORDER_NUMBER_PREFIX: str = "TS"
    # Minor units (pence)
    DELIVERY_FEE: int = 700
    RUNNER_FEE_PER_JOB: int = 500
    # Share of the order subtotal owed to the provider
    TAILOR_PAYOUT_RATE: Decimal = Decimal("0.60")

    NOTIFICATIONS_URL: Optional[str] = None
    NOTIFICATIONS_TIMEOUT_SECONDS: float = 2.0

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    LOG_LEVEL: str = "INFO"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
