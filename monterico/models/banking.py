"""
Bank Data Models

Normalized records produced by any bank aggregator (Plaid, Enable
Banking, ...). Provider-specific payloads are converted to these at
the client boundary so nothing downstream knows which provider was used.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class Institution(BaseModel):
    id: str
    name: str
    country: str


class AuthorizationStart(BaseModel):
    """Where to send the user to link a bank, and the session it creates."""

    url: str
    session_id: str


class AccountBalance(BaseModel):
    current: Decimal
    available: Optional[Decimal] = None


class BankTransactionData(BaseModel):
    """
    One transaction as reported by the aggregator.

    amount is signed: debits are negative, credits positive.
    (transaction_id, account_id) identifies a transaction uniquely.
    """

    transaction_id: str = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)
    date: date
    name: str = "Unknown"
    amount: Decimal
    currency: str = "EUR"
    category: Optional[str] = None
    pending: bool = False
    merchant_name: Optional[str] = None


class TransactionPage(BaseModel):
    transactions: list[BankTransactionData] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class SyncResult(BaseModel):
    connection_id: Optional[str] = None
    accounts: int
    fetched: int
    stored: int
    skipped: int


class StoredTransaction(BankTransactionData):
    """A synced transaction as kept in the ledger store."""

    id: str
    connection_id: Optional[str] = None
    linked_to_expense: bool = False
    expense_id: Optional[str] = None
    linked_to_income: bool = False
    income_id: Optional[str] = None


class BankConnectionRecord(BaseModel):
    id: str
    provider: str
    institution_name: Optional[str] = None
    account_ids: list[str] = Field(default_factory=list)
