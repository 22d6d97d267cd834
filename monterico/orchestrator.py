"""
Main Orchestrator for Monterico

This module ties together all the components and defines the
end-to-end flows for:
1. Household settings and the accounting-mode switch
2. Recording expenses and incomes (routed by the household's mode)
3. Importing synced bank transactions as expenses

DESIGN DECISION: The orchestrator enforces the boundaries:
- An expense is validated against the rules of the household's CURRENT mode
- A mode switch is all-or-nothing: replayed incomes and the new mode
  commit together, or the household stays exactly as it was
- Every step is audited

This is the "glue" that ensures the system works correctly
even when individual components might behave unexpectedly.
"""

from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select

from monterico.accounting import (
    IndividualAccountsEngine,
    SharedPoolEngine,
    validate_expense_data,
)
from monterico.audit import AuditLogger, create_correlation_id, get_logger
from monterico.auth import SessionSigner, StepUpAuthorizationGate, WebAuthnPasskeyVerifier
from monterico.auth.passkeys import PasskeyVerifier
from monterico.banking import BankAggregatorClient, TransactionSyncService
from monterico.config import get_settings
from monterico.errors import (
    ConsistencyError,
    LedgerError,
    NotFoundError,
    ValidationError,
    parse_input,
)
from monterico.models.audit import AuditEvent, AuditEventBuilder
from monterico.models.ledger import (
    AccountingMode,
    ExpenseCreate,
    ExpenseRecord,
    ExpenseType,
    HouseholdSettingsRecord,
    HouseholdSettingsUpdate,
    IncomeCreate,
    IncomeResult,
    ModeSwitchResult,
    SplitType,
)
from monterico.storage import (
    AuditStorageInterface,
    Database,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    LedgerRepository,
    StorageError,
)
from monterico.storage.repository import income_record
from monterico.storage.tables import (
    BankConnectionRow,
    BankTransactionRow,
    HouseholdSettingsRow,
    IncomeRow,
)


def _settings_record(row: HouseholdSettingsRow) -> HouseholdSettingsRecord:
    return HouseholdSettingsRecord(
        household_id=row.household_id,
        accounting_mode=AccountingMode(row.accounting_mode),
        default_paid_by_id=row.default_paid_by_id,
        default_type=ExpenseType(row.default_type),
        default_split_type=SplitType(row.default_split_type),
    )


class SettingsService:
    """
    Household settings, including the accounting mode.

    Mode transitions:
        individual  -> shared_pool   replays every stored income
        shared_pool -> individual    not allowed
        same mode                    no-op
    """

    def __init__(
        self,
        database: Database,
        pool_engine: SharedPoolEngine,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._db = database
        self._pool = pool_engine
        self._audit = audit_logger or AuditLogger()

    async def get_settings(self, household_id: str) -> HouseholdSettingsRecord:
        async with self._db.transaction() as session:
            row = await LedgerRepository(session).get_or_create_settings(household_id)
            return _settings_record(row)

    async def update_defaults(
        self,
        household_id: str,
        data: Union[HouseholdSettingsUpdate, dict[str, Any]],
    ) -> HouseholdSettingsRecord:
        data = parse_input(HouseholdSettingsUpdate, data)

        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            row = await repo.get_or_create_settings(household_id)
            if data.default_paid_by_id is not None:
                await repo.get_member(data.default_paid_by_id, household_id)
                row.default_paid_by_id = data.default_paid_by_id
            if data.default_type is not None:
                row.default_type = data.default_type.value
            if data.default_split_type is not None:
                row.default_split_type = data.default_split_type.value
            await session.flush()
            return _settings_record(row)

    async def switch_accounting_mode(
        self,
        household_id: str,
        mode: Union[AccountingMode, str],
    ) -> ModeSwitchResult:
        """
        Change the household's accounting mode.

        Switching to shared_pool distributes every income already on the
        books (oldest first) between allowances and the pool, as if the
        household had always used shared-pool accounting.

        Raises:
            ValidationError: Unknown mode, or shared_pool -> individual
            ConsistencyError: Replay failed; nothing was changed
        """
        try:
            mode = AccountingMode(mode)
        except ValueError:
            raise ValidationError(f"Invalid accounting mode: {mode}")

        correlation_id = create_correlation_id()
        events: list[AuditEvent] = []
        replaying: Optional[str] = None

        try:
            async with self._db.transaction() as session:
                repo = LedgerRepository(session)
                row = await repo.get_or_create_settings(household_id)
                previous = AccountingMode(row.accounting_mode)

                if previous == mode:
                    return ModeSwitchResult(
                        household_id=household_id,
                        previous_mode=previous,
                        mode=mode,
                    )
                if previous == AccountingMode.SHARED_POOL:
                    raise ValidationError(
                        "Switching from shared pool back to individual accounts is not supported"
                    )

                incomes = (
                    await session.execute(
                        select(IncomeRow)
                        .where(IncomeRow.user_id == household_id)
                        .order_by(IncomeRow.date, IncomeRow.created_at, IncomeRow.id)
                    )
                ).scalars().all()

                for income in incomes:
                    replaying = income.id
                    _, event = await self._pool.apply_income(
                        repo,
                        household_id,
                        income.household_member_id,
                        income.amount,
                        income.date,
                        income.allocated_to_month,
                    )
                    event.correlation_id = correlation_id
                    events.append(event)
                replaying = None

                row.accounting_mode = mode.value
                balance = await repo.pool_balance(household_id)
        except (LedgerError, StorageError) as e:
            if replaying is None:
                raise
            await self._audit.log_replay_failed(
                household_id=household_id,
                income_id=replaying,
                error_message=str(e),
                correlation_id=correlation_id,
            )
            raise ConsistencyError(
                f"Mode switch rolled back: replaying income {replaying} failed ({e})"
            ) from e

        await self._audit.log_all(events)
        await self._audit.log_mode_switched(
            household_id=household_id,
            previous_mode=previous.value,
            mode=mode.value,
            incomes_replayed=len(events),
            correlation_id=correlation_id,
        )
        return ModeSwitchResult(
            household_id=household_id,
            previous_mode=previous,
            mode=mode,
            incomes_replayed=len(events),
            pool_balance=balance,
        )


class LedgerFlow:
    """
    Orchestrates expense and income recording.

    Flow:
    1. Look up the household's accounting mode
    2. Fill in the household's expense defaults
    3. Check the payload against the mode's required fields
    4. Hand off to the engine for that mode
    """

    def __init__(
        self,
        database: Database,
        individual_engine: IndividualAccountsEngine,
        pool_engine: SharedPoolEngine,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._db = database
        self._individual = individual_engine
        self._pool = pool_engine
        self._audit = audit_logger or AuditLogger()
        self._logger = get_logger("monterico.orchestrator")

    async def _mode_and_defaults(
        self, household_id: str
    ) -> tuple[AccountingMode, HouseholdSettingsRecord]:
        async with self._db.transaction() as session:
            row = await LedgerRepository(session).get_or_create_settings(household_id)
            record = _settings_record(row)
        return record.accounting_mode, record

    async def record_expense(
        self,
        household_id: str,
        data: Union[ExpenseCreate, dict[str, Any]],
    ) -> ExpenseRecord:
        """
        Record an expense under the household's current mode.

        Raises:
            ValidationError: A field the mode requires is missing, or bad input
        """
        if isinstance(data, ExpenseCreate):
            payload = data.model_dump(mode="json", exclude_unset=True)
        else:
            payload = dict(data)

        mode, defaults = await self._mode_and_defaults(household_id)

        payload.setdefault("type", defaults.default_type.value)
        if not payload.get("paid_by_id") and defaults.default_paid_by_id:
            payload["paid_by_id"] = defaults.default_paid_by_id
        if (
            mode == AccountingMode.INDIVIDUAL
            and payload.get("type") == ExpenseType.SHARED.value
            and not payload.get("split_type")
            and not payload.get("custom_splits")
        ):
            payload["split_type"] = defaults.default_split_type.value

        validate_expense_data(mode, payload).raise_if_invalid()

        if mode == AccountingMode.SHARED_POOL:
            return await self._pool.record_expense(household_id, payload)
        return await self._individual.create_expense(household_id, payload)

    async def record_income(
        self,
        household_id: str,
        data: Union[IncomeCreate, dict[str, Any]],
    ) -> IncomeResult:
        """
        Record an income.

        Under shared_pool it is distributed right away. Under individual
        it is only stored; a later switch to shared_pool replays it.
        """
        data = parse_input(IncomeCreate, data)
        mode, _ = await self._mode_and_defaults(household_id)

        if mode == AccountingMode.SHARED_POOL:
            return await self._pool.record_income(household_id, data)

        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            await repo.get_member(data.household_member_id, household_id)
            income = IncomeRow(
                user_id=household_id,
                household_member_id=data.household_member_id,
                date=data.date,
                description=data.description or data.type,
                amount=data.amount,
                currency=data.currency or get_settings().ledger.default_currency,
                type=data.type,
                allocated_to_month=data.effective_month,
            )
            session.add(income)
            await session.flush()
            if data.transaction_id:
                await repo.link_transaction(household_id, data.transaction_id, income_id=income.id)
            record = income_record(income)

        return IncomeResult(income=record, allocation=None, mode=mode)

    async def delete_expense(self, household_id: str, expense_id: str) -> None:
        await self._individual.delete_expense(household_id, expense_id)

    async def delete_income(self, household_id: str, income_id: str) -> None:
        """
        Delete an income and release the bank transaction it came from.

        Under shared_pool the allocation made when the income was recorded
        stays in the pool and the allowance; correct those with an expense
        or an allowance adjustment.

        Raises:
            NotFoundError: Income unknown or owned by another household
        """
        async with self._db.transaction() as session:
            income = await session.get(IncomeRow, income_id)
            if income is None or income.user_id != household_id:
                raise NotFoundError(f"Income not found: {income_id}")
            amount = income.amount
            await LedgerRepository(session).delete_income(income_id)

        await self._audit.log(AuditEventBuilder.income_deleted(household_id, income_id, amount))

    async def import_transactions(
        self,
        household_id: str,
        transaction_ids: list[str],
        paid_by_id: str,
        category_id: str,
    ) -> list[ExpenseRecord]:
        """
        Turn synced bank debits into shared expenses.

        Credits and transactions already linked to an expense or income
        are skipped. Each import is its own expense transaction, so one
        bad row doesn't undo the others that were already recorded.

        Raises:
            NotFoundError: A transaction id the household doesn't own
        """
        if not transaction_ids:
            raise ValidationError("No transactions selected")

        async with self._db.transaction() as session:
            rows = (
                await session.execute(
                    select(BankTransactionRow)
                    .join(
                        BankConnectionRow,
                        BankConnectionRow.id == BankTransactionRow.connection_id,
                    )
                    .where(
                        BankConnectionRow.user_id == household_id,
                        BankTransactionRow.id.in_(transaction_ids),
                    )
                    .order_by(BankTransactionRow.date, BankTransactionRow.id)
                )
            ).scalars().all()

        missing = set(transaction_ids) - {row.id for row in rows}
        if missing:
            raise NotFoundError(f"Bank transaction not found: {sorted(missing)[0]}")

        mode, _ = await self._mode_and_defaults(household_id)
        imported: list[ExpenseRecord] = []
        for row in rows:
            if row.linked_to_expense or row.linked_to_income or row.amount >= 0:
                self._logger.info("transaction_import_skipped", transaction_id=row.id)
                continue

            payload: dict[str, Any] = {
                "date": row.date,
                "description": row.merchant_name or row.name or "Bank transaction",
                "category_id": category_id,
                "amount": abs(Decimal(row.amount)),
                "currency": row.currency,
                "paid_by_id": paid_by_id,
                "type": ExpenseType.SHARED.value,
                "transaction_id": row.id,
            }
            if mode == AccountingMode.SHARED_POOL:
                payload["paid_from_pool"] = False
            else:
                payload["split_type"] = SplitType.EQUAL.value
            imported.append(await self.record_expense(household_id, payload))

        await self._audit.log(AuditEventBuilder.transactions_imported(household_id, len(imported)))
        return imported


def create_app_components(
    database_url: Optional[str] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
    passkey_verifier: Optional[PasskeyVerifier] = None,
    bank_client: Optional[BankAggregatorClient] = None,
    use_sheets: bool = True,
) -> dict[str, Any]:
    """
    Factory function to create all application components.

    Args:
        database_url: Overrides DATABASE_URL
        audit_storage: Audit sink. If None, Google Sheets is used when
                      configured, otherwise events are only logged locally.
        passkey_verifier: Defaults to the py_webauthn verifier
        bank_client: Aggregator client. Bank sync is only wired when given.
        use_sheets: Whether to try the Google Sheets audit sink.
                   Set to False for testing without it.

    Returns:
        Dict of components keyed by name
    """
    logger = get_logger("monterico.orchestrator")
    settings = get_settings()

    if audit_storage is None and use_sheets:
        try:
            sheets_client = GoogleSheetsClient(settings.google_sheets)
            sheets_client.get_audit_sheet()
            audit_storage = GoogleSheetsAuditStorage(sheets_client)
        except (PydanticValidationError, StorageError) as e:
            # Audit sink not reachable - continue with local logging only
            logger.warning("audit_storage_unavailable", error=str(e))
            audit_storage = None

    audit_logger = AuditLogger(audit_storage)
    database = Database(database_url)
    currency = settings.ledger.default_currency

    individual = IndividualAccountsEngine(database, audit_logger, currency)
    pool = SharedPoolEngine(database, audit_logger, currency)
    gate = StepUpAuthorizationGate(
        database,
        SessionSigner(settings.session),
        passkey_verifier or WebAuthnPasskeyVerifier(settings.webauthn),
        audit_logger,
        settings.session,
    )

    components: dict[str, Any] = {
        "database": database,
        "audit_logger": audit_logger,
        "individual_engine": individual,
        "pool_engine": pool,
        "settings_service": SettingsService(database, pool, audit_logger),
        "ledger_flow": LedgerFlow(database, individual, pool, audit_logger),
        "gate": gate,
        "sync_service": None,
    }
    if bank_client is not None:
        components["sync_service"] = TransactionSyncService(
            database, bank_client, gate, audit_logger, settings.ledger
        )
    return components
