"""
Service configuration.

Values come from the process environment, with a `.env` file at the project
root loaded first.
"""
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./paylink.db"

    # Agent auth (HS256 bearer tokens)
    jwt_secret: str = "change-me-in-production"

    # PayPal
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_mode: Literal["sandbox", "live"] = "sandbox"
    paypal_webhook_id: Optional[str] = None
    paypal_timeout_seconds: float = 15.0

    # Payment links
    frontend_url: str = "http://localhost:8000"
    payment_expiry_hours: float = 24
    default_currency: str = "USD"

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


@lru_cache
def get_settings() -> Settings:
    return Settings()
