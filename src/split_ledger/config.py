"""Configuration management for Split Ledger."""

from datetime import tzinfo
from pathlib import Path
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SPLIT_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Ledger document
    ledger_path: Path = Path.home() / ".split_ledger" / "ledger.json"

    # Display
    currency_code: str = "USD"  # display only; one currency per ledger

    # Feed day grouping
    timezone: str = "UTC"

    # Overrides the document's current user (e.g. to view the ledger as someone else)
    current_user_id: UUID | None = None

    def __init__(self, **kwargs):
        """Initialize settings and create the ledger directory if needed."""
        super().__init__(**kwargs)
        self.ledger_path.parent.mkdir(parents=True, exist_ok=True)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)


def load_settings(**overrides) -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings(**overrides)
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check your SPLIT_LEDGER_* environment "
            f"variables or .env file. See .env.example for reference.\n"
            f"Error: {e}"
        ) from e
