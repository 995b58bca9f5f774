"""
Sync configuration from environment variables.
Settings class using pydantic-settings with explicit validation before any I/O.
"""

from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from backend root so it loads when running from backend/ or project root
_BACKEND_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _BACKEND_ROOT / ".env"


class ConfigurationError(ValueError):
    """Raised when required environment is missing or invalid."""


class Settings(BaseSettings):
    """
    Sync settings loaded from environment and .env.
    Credentials default to empty so the token-inspection command can still
    report what is missing; call validate_for_sync() before talking to anything.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE if _ENV_FILE.exists() else ".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        populate_by_name=True,
    )

    # Supabase
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_KEY: str = ""
    database_url: str = Field(
        default="",
        description="Direct PostgreSQL connection string (informational; sync uses the Supabase client)",
        validation_alias="DATABASE_URL",
    )

    # KiotViet
    KIOTVIET_BASE_URL: str = "https://id.kiotviet.vn"
    KIOTVIET_PUBLIC_API_URL: str = "https://public.kiotapi.com"
    KIOTVIET_CLIENT_ID: str = ""
    KIOTVIET_CLIENT_SECRET: str = ""
    KIOTVIET_RETAILER: str = ""

    # Paging and politeness (KiotViet caps pageSize at 100)
    page_size: int = Field(default=100, ge=1, le=100, validation_alias="KIOTVIET_PAGE_SIZE")
    request_delay_seconds: float = Field(
        default=0.25,
        ge=0,
        description="Pause between list requests to stay under upstream rate limits",
        validation_alias="KIOTVIET_REQUEST_DELAY_SECONDS",
    )
    request_timeout_seconds: float = Field(default=30, gt=0, validation_alias="KIOTVIET_REQUEST_TIMEOUT_SECONDS")

    # Retries
    max_attempts: int = Field(default=5, ge=1, validation_alias="KIOTVIET_MAX_ATTEMPTS")
    token_max_attempts: int = Field(default=3, ge=1, validation_alias="KIOTVIET_TOKEN_MAX_ATTEMPTS")
    backoff_base_seconds: float = Field(default=1.0, ge=0, validation_alias="KIOTVIET_BACKOFF_BASE_SECONDS")
    max_backoff_seconds: float = Field(default=30.0, ge=0, validation_alias="KIOTVIET_MAX_BACKOFF_SECONDS")

    # Token
    token_skew_seconds: int = Field(
        default=60,
        ge=0,
        description="Bearer skew: refresh this many seconds before expiry",
        validation_alias="KIOTVIET_TOKEN_SKEW_SECONDS",
    )
    token_title: str = Field(default="kiotviet", validation_alias="KIOTVIET_TOKEN_TITLE")

    # Historical sweeps
    historical_earliest: date = Field(default=date(2020, 1, 1), validation_alias="KIOTVIET_HISTORICAL_EARLIEST")
    window_months: int = Field(default=3, ge=1, validation_alias="KIOTVIET_WINDOW_MONTHS")

    # Reporting
    max_error_samples: int = Field(default=10, ge=0, validation_alias="SYNC_MAX_ERROR_SAMPLES")
    sync_runs_table: str = Field(default="kv_sync_runs", validation_alias="SYNC_RUNS_TABLE")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    @field_validator(
        "SUPABASE_URL",
        "KIOTVIET_BASE_URL",
        "KIOTVIET_PUBLIC_API_URL",
        mode="before",
    )
    @classmethod
    def strip_trailing_slash(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: object) -> str:
        if v is None or (isinstance(v, str) and not v.strip()):
            return "INFO"
        return str(v).strip().upper()

    @property
    def token_url(self) -> str:
        return f"{self.KIOTVIET_BASE_URL}/connect/token"

    def missing_for_store(self) -> List[str]:
        """Keys needed to read or write the stored credential."""
        missing: List[str] = []
        if not self.SUPABASE_URL:
            missing.append("SUPABASE_URL")
        if not self.SUPABASE_SERVICE_KEY:
            missing.append("SUPABASE_SERVICE_KEY")
        return missing

    def missing_for_sync(self) -> List[str]:
        missing = self.missing_for_store()
        if not self.KIOTVIET_BASE_URL:
            missing.append("KIOTVIET_BASE_URL")
        if not self.KIOTVIET_PUBLIC_API_URL:
            missing.append("KIOTVIET_PUBLIC_API_URL")
        if not self.KIOTVIET_CLIENT_ID:
            missing.append("KIOTVIET_CLIENT_ID")
        if not self.KIOTVIET_CLIENT_SECRET:
            missing.append("KIOTVIET_CLIENT_SECRET")
        if not self.KIOTVIET_RETAILER:
            missing.append("KIOTVIET_RETAILER")
        return missing

    def validate_for_store(self) -> None:
        """Raises ConfigurationError unless the Supabase keys are set."""
        self._raise_if_missing(self.missing_for_store())

    def validate_for_sync(self) -> None:
        """
        Call before any I/O. Raises ConfigurationError listing every missing key.
        """
        self._raise_if_missing(self.missing_for_sync())

    def _raise_if_missing(self, missing: List[str]) -> None:
        if missing:
            hint = ""
            if "SUPABASE_SERVICE_KEY" in missing and self.database_url:
                hint = " (DATABASE_URL is set, but the sync writes through the Supabase API and needs the service key)"
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}{hint}")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
