from __future__ import annotations
import logging
import os
from functools import lru_cache

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "ecommerce")

    ENVIRONMENT: str = "development"
    APP_NAME: str = "Storefront"
    APP_URL: str = "http://localhost:8000"
    CORS_ORIGINS: list[str] = ["*"]

    ACCESS_TOKEN_SECRET: str = "secret-key-change-me"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    CURRENCY: str = "INR"

    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com"

    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_SECRET: str = ""
    PAYPAL_BASE_URL: str = "https://api-m.sandbox.paypal.com"
    PAYPAL_CURRENCY: str = "USD"
    # INR -> USD
    PAYPAL_EXCHANGE_RATE: float = 0.012

    PAYMENT_TIMEOUT_SECONDS: float = 15.0

    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 2525
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    MAIL_FROM: str = "orders@storefront.local"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.is_development:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        cache_logger_on_first_use=True,
    )
