from __future__ import annotations
import logging
import os
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "storefront")

    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_DAYS: int = 7
    AUTH_COOKIE_NAMES: list[str] = ["adminToken", "token"]
    BCRYPT_ROUNDS: int = 12

    # Money rules
    FREE_SHIPPING_THRESHOLD: float = 999
    SHIPPING_FEE: float = 99
    TOTAL_TOLERANCE: float = 1.0
    TRUST_CLIENT_TOTALS: bool = False

    # "reserve" decrements stock before the order is written and rejects
    # short lines; "best_effort" writes the order first and saturates at zero.
    INVENTORY_POLICY: Literal["reserve", "best_effort"] = "reserve"
    STOCK_UPDATE_RETRIES: int = 3

    PAYMENT_KEY_SECRET: str = ""

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]


@lru_cache
def get_settings() -> Settings:
    return Settings()


def setup_logging(level: str | None = None) -> None:
    """Configure root logging for the API process."""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    logging.basicConfig(
        level=getattr(logging, (level or get_settings().LOG_LEVEL).upper(), logging.INFO),
        format=log_format,
    )
