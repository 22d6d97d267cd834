"""Configuration package."""

from monterico.config.settings import (
    DatabaseSettings,
    GoogleSheetsSettings,
    LedgerSettings,
    SessionSettings,
    Settings,
    WebAuthnSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "DatabaseSettings",
    "GoogleSheetsSettings",
    "LedgerSettings",
    "SessionSettings",
    "Settings",
    "WebAuthnSettings",
    "get_settings",
    "validate_all_settings",
]
