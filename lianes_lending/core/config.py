import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseModel):
    environment: str = "local"
    database_url: str | None = None
    loan_days: int = Field(default=14, gt=0)
    max_active_loans: int = Field(default=5, gt=0)
    max_active_reservations: int = Field(default=5, gt=0)
    reservation_days: int = Field(default=7, gt=0)
    pickup_days: int = Field(default=3, gt=0)
    tx_max_retries: int = Field(default=5, ge=0)
    tx_backoff_seconds: float = Field(default=0.1, ge=0)
    tx_timeout_seconds: float = Field(default=10.0, gt=0)
    sweep_interval_seconds: float = Field(default=0, ge=0)
    log_level: str = "INFO"


def _ensure_env_loaded():
    dotenv_path = PROJECT_ROOT / ".env"
    if dotenv_path.exists():
        load_dotenv(dotenv_path)


def get_settings() -> Settings:
    _ensure_env_loaded()
    values = {}
    for name in Settings.model_fields:
        raw = os.getenv(name.upper())
        if raw is not None and raw != "":
            values[name] = raw
    return Settings(**values)
