"""Configuration management for Debt Ledger."""

from decimal import Decimal
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DEBT_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Ledger API
    api_url: str = "http://localhost:4000"
    request_timeout: float = 15.0

    # Session-scoped bearer token (fallback credential store)
    auth_token: str | None = None

    # Current user, as issued by the authentication provider
    user_id: str | None = None
    user_name: str | None = None

    # Ledger rules
    max_debt_amount: Decimal = Decimal("100000")
    split_tolerance: Decimal = Decimal("0.01")
    currency_symbol: str = "₹"

    # Seconds after which an unfinished settlement claim can be reclaimed
    settlement_claim_timeout: float = 300.0

    # Fan-out notifications after ledger mutations
    notifications_enabled: bool = True

    # Database path
    database_path: Path = Path.home() / ".debt_ledger" / "debt_ledger.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def api_base_url(self) -> str:
        """Base URL every ledger endpoint is resolved against."""
        return f"{self.api_url}/api"


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Make sure your .env file or "
            f"DEBT_LEDGER_* environment variables are valid.\n"
            f"Error: {e}"
        ) from e
