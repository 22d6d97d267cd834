"""
Bank Aggregator Client Interface

DESIGN DECISION: Providers (Plaid, Enable Banking, ...) sit behind one
abstract client. The sync service only ever sees the normalized models
in monterico.models.banking, so adding a provider means writing one
subclass and nothing else.

Implementations must convert provider payloads at this boundary:
debits become negative amounts, and a missing payee name becomes "Unknown".
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Optional

from monterico.models.banking import (
    AccountBalance,
    AuthorizationStart,
    Institution,
    TransactionPage,
)


class BankAggregatorClient(ABC):
    """Abstract interface for a bank-data aggregator."""

    provider: str = "unknown"

    @abstractmethod
    async def list_institutions(
        self,
        country: str,
        persona_type: Optional[str] = None,
    ) -> list[Institution]:
        """Banks available in a country (optionally only personal/business)."""
        pass

    @abstractmethod
    async def start_authorization(self, params: dict[str, Any]) -> AuthorizationStart:
        """
        Begin linking a bank.

        Returns:
            The URL to redirect the user to and the aggregator session id
        """
        pass

    @abstractmethod
    async def fetch_account_balance(self, session_id: str, account_ref: str) -> AccountBalance:
        pass

    @abstractmethod
    async def fetch_transactions(
        self,
        session_id: str,
        account_ref: str,
        date_from: date,
        date_to: date,
        page_token: Optional[str] = None,
    ) -> TransactionPage:
        """
        One page of transactions for an account.

        Callers keep requesting with next_page_token until it is None.
        """
        pass


class BankAggregatorError(Exception):
    """
    Failure talking to the aggregator (timeout, 5xx, rate limit, broken paging).

    Raised by implementations for errors worth retrying; the sync retries
    single page fetches only. Anything else propagates unchanged.
    """
    pass
