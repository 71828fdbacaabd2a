# backend/dealdesk/core/config.py
from decimal import Decimal
from typing import List
import secrets

from pydantic_settings import BaseSettings
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


class Settings(BaseSettings):
    # --- Security / JWT ---
    SECRET_KEY: str = secrets.token_urlsafe(32)  # set via ENV in production
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # --- Database ---
    DATABASE_URL: str = "sqlite:///./dealdesk.db"
    DB_STATEMENT_TIMEOUT_SECONDS: int = 15

    # --- CORS ---
    CORS_ALLOW_ORIGINS: List[str] = ["*"]

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "standard"  # standard | json

    # --- Deal closure ---
    CONTRACT_NUMBER_PREFIX: str = "CTR"
    DEFAULT_COMMISSION_PERCENTAGE: Decimal = Decimal("5")
    DEFAULT_CONTRACT_TYPE: str = "sale"
    SEQUENCE_MAX_ATTEMPTS: int = 5

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()


def build_connect_args(url: str, timeout_seconds: int) -> dict:
    """Per-statement timeout for the configured driver."""
    if url.startswith("sqlite"):
        # busy timeout: how long a writer waits for the database lock
        return {"check_same_thread": False, "timeout": timeout_seconds}
    if url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={timeout_seconds * 1000}"}
    return {}


# SQLAlchemy Engine & Session
engine = create_engine(
    settings.DATABASE_URL,
    connect_args=build_connect_args(settings.DATABASE_URL, settings.DB_STATEMENT_TIMEOUT_SECONDS),
    future=True,
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
