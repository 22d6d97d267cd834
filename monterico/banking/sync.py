"""
Transaction Sync Service

Pulls transactions from the bank aggregator into the ledger store.

CRITICAL: Every operation that touches a bank goes through the step-up
gate first. Nothing is fetched, and no aggregator call is made, unless the
session carries a bank step-up that is still inside its window.

DESIGN DECISION: Pages are fetched first and stored afterwards in a single
transaction. A sync that fails half-way through paging stores nothing, and
running it again is always safe: (transaction_id, account_id) pairs that
are already stored, or repeated within the batch, are skipped.
"""

from datetime import date, datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, select, update
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from monterico.audit import AuditLogger, get_logger
from monterico.auth import StepUpAuthorizationGate
from monterico.banking.client import BankAggregatorClient, BankAggregatorError
from monterico.config import LedgerSettings, get_settings
from monterico.errors import NotFoundError, ValidationError
from monterico.models.audit import AuditEventBuilder
from monterico.models.banking import (
    AccountBalance,
    AuthorizationStart,
    BankConnectionRecord,
    BankTransactionData,
    Institution,
    StoredTransaction,
    SyncResult,
    TransactionPage,
)
from monterico.storage import Database
from monterico.storage.tables import (
    BankAccountRow,
    BankConnectionRow,
    BankTransactionRow,
)


def stored_transaction(row: BankTransactionRow) -> StoredTransaction:
    return StoredTransaction(
        id=row.id,
        connection_id=row.connection_id,
        transaction_id=row.transaction_id,
        account_id=row.account_id,
        date=row.date,
        name=row.name,
        amount=row.amount,
        currency=row.currency,
        category=row.category,
        pending=row.pending,
        merchant_name=row.merchant_name,
        linked_to_expense=row.linked_to_expense,
        expense_id=row.expense_id,
        linked_to_income=row.linked_to_income,
        income_id=row.income_id,
    )


class TransactionSyncService:
    """
    Gated access to the aggregator plus the sync into the store.

    Usage:
        sync = TransactionSyncService(database, client, gate)
        start = await sync.start_bank_authorization(token, {"aspsp": {...}})
        connection = await sync.register_connection(token, start.session_id, ["acc-1"])
        result = await sync.sync_connection(token, connection.id)
        await sync.delete_connection(token, connection.id)
    """

    def __init__(
        self,
        database: Database,
        client: BankAggregatorClient,
        gate: StepUpAuthorizationGate,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._db = database
        self._client = client
        self._gate = gate
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().ledger
        self._logger = get_logger("monterico.banking.sync")

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    async def list_institutions(
        self,
        token: str,
        country: str,
        persona_type: Optional[str] = None,
    ) -> list[Institution]:
        """Banks the user can link. Needs a session but no bank step-up."""
        self._gate.authenticate(token)
        return await self._client.list_institutions(country, persona_type)

    async def start_bank_authorization(
        self,
        token: str,
        params: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> AuthorizationStart:
        await self._gate.require_bank_operation_mfa(token, now=now)
        return await self._client.start_authorization(params)

    async def register_connection(
        self,
        token: str,
        session_id: str,
        account_ids: list[str],
        institution_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BankConnectionRecord:
        """Store a bank link once the user has come back from the aggregator."""
        claims = await self._gate.require_bank_operation_mfa(token, now=now)
        if not session_id:
            raise ValidationError("Missing aggregator session id")

        async with self._db.transaction() as session:
            connection = BankConnectionRow(
                user_id=claims.user_id,
                provider=self._client.provider,
                session_id=session_id,
                institution_name=institution_name,
            )
            session.add(connection)
            await session.flush()
            for account_id in dict.fromkeys(account_ids):
                session.add(BankAccountRow(connection_id=connection.id, account_id=account_id))

            return BankConnectionRecord(
                id=connection.id,
                provider=connection.provider,
                institution_name=institution_name,
                account_ids=list(dict.fromkeys(account_ids)),
            )

    async def get_account_balance(
        self,
        token: str,
        connection_id: str,
        account_id: str,
        now: Optional[datetime] = None,
    ) -> AccountBalance:
        claims = await self._gate.require_bank_operation_mfa(token, now=now)

        async with self._db.transaction() as session:
            connection = await self._owned_connection(session, claims.user_id, connection_id)
            account = (
                await session.execute(
                    select(BankAccountRow).where(
                        BankAccountRow.connection_id == connection.id,
                        BankAccountRow.account_id == account_id,
                    )
                )
            ).scalar_one_or_none()
            if account is None:
                raise NotFoundError(f"Bank account not found: {account_id}")
            session_id = connection.session_id

        return await self._client.fetch_account_balance(session_id, account_id)

    async def list_connections(self, token: str) -> list[BankConnectionRecord]:
        """The user's bank links, oldest first. Reading them needs no step-up."""
        claims = self._gate.authenticate(token)

        async with self._db.transaction() as session:
            connections = (
                await session.execute(
                    select(BankConnectionRow)
                    .where(BankConnectionRow.user_id == claims.user_id)
                    .order_by(BankConnectionRow.created_at, BankConnectionRow.id)
                )
            ).scalars().all()
            records = []
            for connection in connections:
                account_ids = (
                    await session.execute(
                        select(BankAccountRow.account_id)
                        .where(BankAccountRow.connection_id == connection.id)
                        .order_by(BankAccountRow.account_id)
                    )
                ).scalars().all()
                records.append(
                    BankConnectionRecord(
                        id=connection.id,
                        provider=connection.provider,
                        institution_name=connection.institution_name,
                        account_ids=list(account_ids),
                    )
                )
            return records

    async def delete_connection(
        self,
        token: str,
        connection_id: str,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Remove a bank link with its accounts and unlinked transactions.

        Transactions already turned into an expense or income stay, detached
        from the connection, so the ledger entry keeps its bank reference.

        Raises:
            AuthorizationError(BANK_MFA_REQUIRED | BANK_MFA_EXPIRED): No valid step-up
            NotFoundError: Connection unknown or owned by someone else
        """
        claims = await self._gate.require_bank_operation_mfa(token, now=now)

        async with self._db.transaction() as session:
            connection = await self._owned_connection(session, claims.user_id, connection_id)
            unlinked = (
                BankTransactionRow.connection_id == connection.id,
                BankTransactionRow.linked_to_expense.is_(False),
                BankTransactionRow.linked_to_income.is_(False),
            )
            removed = (
                await session.execute(delete(BankTransactionRow).where(*unlinked))
            ).rowcount
            kept = (
                await session.execute(
                    update(BankTransactionRow)
                    .where(BankTransactionRow.connection_id == connection.id)
                    .values(connection_id=None)
                )
            ).rowcount
            await session.execute(
                delete(BankAccountRow).where(BankAccountRow.connection_id == connection.id)
            )
            await session.delete(connection)

        self._logger.info(
            "bank_connection_removed",
            connection_id=connection_id,
            transactions_removed=removed,
            linked_kept=kept,
        )
        await self._audit.log(
            AuditEventBuilder.bank_connection_removed(claims.user_id, connection_id, removed, kept)
        )

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync_connection(
        self,
        token: str,
        connection_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """
        Fetch every page for every account of a connection and store new transactions.

        Defaults to the last sync_lookback_days days.

        Raises:
            AuthorizationError(BANK_MFA_REQUIRED | BANK_MFA_EXPIRED): No valid step-up
            NotFoundError: Connection unknown or owned by someone else
        """
        claims = await self._gate.require_bank_operation_mfa(token, now=now)

        date_to = date_to or date.today()
        date_from = date_from or date_to - timedelta(days=self._settings.sync_lookback_days)
        if date_from > date_to:
            raise ValidationError("date_from must not be after date_to")

        async with self._db.transaction() as session:
            connection = await self._owned_connection(session, claims.user_id, connection_id)
            accounts = (
                await session.execute(
                    select(BankAccountRow.account_id)
                    .where(BankAccountRow.connection_id == connection.id)
                    .order_by(BankAccountRow.account_id)
                )
            ).scalars().all()
            session_id = connection.session_id

        batch: list[tuple[str, BankTransactionData]] = []
        for account_id in accounts:
            transactions = await self._fetch_account(session_id, account_id, date_from, date_to)
            batch.extend((account_id, tx) for tx in transactions)

        stored = 0
        skipped = 0
        async with self._db.transaction() as session:
            seen: set[tuple[str, str]] = set()
            for account_id, tx in batch:
                key = (tx.transaction_id, account_id)
                if key in seen:
                    skipped += 1
                    continue
                seen.add(key)

                existing = (
                    await session.execute(
                        select(BankTransactionRow.id).where(
                            BankTransactionRow.transaction_id == tx.transaction_id,
                            BankTransactionRow.account_id == account_id,
                        )
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    skipped += 1
                    continue

                session.add(
                    BankTransactionRow(
                        connection_id=connection_id,
                        transaction_id=tx.transaction_id,
                        account_id=account_id,
                        date=tx.date,
                        name=tx.name or "Unknown",
                        amount=tx.amount,
                        currency=tx.currency,
                        category=tx.category,
                        pending=tx.pending,
                        merchant_name=tx.merchant_name,
                    )
                )
                stored += 1

        result = SyncResult(
            connection_id=connection_id,
            accounts=len(accounts),
            fetched=len(batch),
            stored=stored,
            skipped=skipped,
        )
        await self._audit.log(
            AuditEventBuilder.transactions_synced(
                claims.user_id, connection_id, result.fetched, result.stored
            )
        )
        return result

    async def list_transactions(
        self,
        household_id: str,
        unlinked_only: bool = False,
    ) -> list[StoredTransaction]:
        """Stored transactions of the household, newest first."""
        async with self._db.transaction() as session:
            query = (
                select(BankTransactionRow)
                .join(BankConnectionRow, BankConnectionRow.id == BankTransactionRow.connection_id)
                .where(BankConnectionRow.user_id == household_id)
                .order_by(BankTransactionRow.date.desc(), BankTransactionRow.id)
            )
            if unlinked_only:
                query = query.where(
                    BankTransactionRow.linked_to_expense.is_(False),
                    BankTransactionRow.linked_to_income.is_(False),
                )
            rows = (await session.execute(query)).scalars().all()
            return [stored_transaction(row) for row in rows]

    async def _fetch_account(
        self,
        session_id: str,
        account_id: str,
        date_from: date,
        date_to: date,
    ) -> list[BankTransactionData]:
        """
        Every page of one account.

        Raises:
            BankAggregatorError: A page token came back twice, or the account
                                 has more than sync_max_pages pages
        """
        transactions: list[BankTransactionData] = []
        seen_tokens: set[str] = set()
        page_token: Optional[str] = None
        for _ in range(self._settings.sync_max_pages):
            page = await self._fetch_page(session_id, account_id, date_from, date_to, page_token)
            transactions.extend(page.transactions)
            page_token = page.next_page_token
            if not page_token:
                return transactions
            if page_token in seen_tokens:
                self._logger.warning(
                    "page_token_repeated",
                    account_id=account_id,
                    page_token=page_token,
                )
                raise BankAggregatorError(
                    f"Aggregator repeated page token {page_token!r} for account {account_id}"
                )
            seen_tokens.add(page_token)

        self._logger.warning(
            "page_limit_reached",
            account_id=account_id,
            max_pages=self._settings.sync_max_pages,
        )
        raise BankAggregatorError(
            f"Account {account_id} has more than {self._settings.sync_max_pages} pages"
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(BankAggregatorError),
        reraise=True,
    )
    async def _fetch_page(
        self,
        session_id: str,
        account_id: str,
        date_from: date,
        date_to: date,
        page_token: Optional[str],
    ) -> TransactionPage:
        self._logger.debug(
            "fetching_transactions",
            account_id=account_id,
            page_token=page_token,
        )
        return await self._client.fetch_transactions(
            session_id, account_id, date_from, date_to, page_token
        )

    @staticmethod
    async def _owned_connection(session, user_id: str, connection_id: str) -> BankConnectionRow:
        connection = await session.get(BankConnectionRow, connection_id)
        if connection is None or connection.user_id != user_id:
            raise NotFoundError(f"Bank connection not found: {connection_id}")
        return connection
