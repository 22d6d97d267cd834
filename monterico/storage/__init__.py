"""
Storage Package

The ledger lives in a relational database accessed through SQLAlchemy's
asyncio extension. The audit trail goes through a swappable sink
(Google Sheets or in-memory).
"""

from monterico.storage.database import Database
from monterico.storage.google_sheets import GoogleSheetsAuditStorage, GoogleSheetsClient
from monterico.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    StorageError,
)
from monterico.storage.memory import InMemoryAuditStorage
from monterico.storage.repository import LedgerRepository

__all__ = [
    "Database",
    "LedgerRepository",
    # Audit sinks
    "AuditStorageInterface",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "InMemoryAuditStorage",
    # Exceptions
    "ConnectionError",
    "StorageError",
]
