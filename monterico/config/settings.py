"""
Configuration Management for Monterico

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite+aiosqlite:///./monterico.db",
        description="SQLAlchemy async database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )


class SessionSettings(BaseSettings):
    """Signed session token configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SESSION_",
        extra="ignore"
    )

    secret_key: str = Field(
        ...,
        min_length=16,
        description="HMAC key used to sign session tokens"
    )
    algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm"
    )
    ttl_hours: int = Field(
        default=12,
        ge=1,
        le=24 * 30,
        description="Lifetime of a session token"
    )
    # Step-up window for bank operations
    bank_mfa_validity_minutes: int = Field(
        default=15,
        ge=1,
        le=120,
        description="How long a passkey step-up authorizes bank operations"
    )


class WebAuthnSettings(BaseSettings):
    """Relying party configuration for passkeys."""

    model_config = SettingsConfigDict(
        env_prefix="WEBAUTHN_",
        extra="ignore"
    )

    rp_id: str = Field(
        default="localhost",
        description="Relying party ID (the site's effective domain)"
    )
    rp_name: str = Field(
        default="Monterico",
        description="Relying party display name"
    )
    origin: str = Field(
        default="http://localhost:3000",
        description="Expected origin of WebAuthn responses"
    )
    challenge_timeout_ms: int = Field(
        default=60000,
        ge=10000,
        description="How long the browser waits for the authenticator"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets audit sink configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class LedgerSettings(BaseSettings):
    """
    Accounting defaults.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    default_currency: str = Field(
        default="EUR",
        min_length=3,
        max_length=3,
        description="Currency used when an entry doesn't name one"
    )
    sync_lookback_days: int = Field(
        default=90,
        ge=1,
        le=730,
        description="How far back a bank sync fetches when no range is given"
    )
    sync_max_pages: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Most pages fetched per account in one sync"
    )
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily so a partially configured
    # environment can still run the parts it has.

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def session(self) -> SessionSettings:
        return SessionSettings()

    @property
    def webauthn(self) -> WebAuthnSettings:
        return WebAuthnSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results: dict = {}
    settings = get_settings()

    for name in ("database", "session", "webauthn", "google_sheets", "ledger"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
