"""
Shared-Pool Engine

Under shared-pool accounting the household keeps one communal pool.
Every income is divided between the earner's personal allowance for the
month and the pool. Shared expenses are either paid from the pool or, when
a member paid them out of pocket, turned into a reimbursement the
household owes that member.

State transitions:
1. Income received    -> allowance.allocated += a, pool += (income - a)
2. Expense from pool  -> pool -= amount
3. Shared expense paid personally -> reimbursement(amount, unsettled)
4. Allowance spend/refund -> spent +/- amount, remaining -/+ amount
5. Rollover           -> carried_to = max(remaining, 0), nothing else
6. Settlement         -> reimbursement marked settled, no money moves

DESIGN DECISION: Every transition is one database transaction, and every
balance change is a relative UPDATE (see LedgerRepository). Two incomes
processed at the same time for the same member can't lose each other's
allocation.

DESIGN DECISION: remaining may go negative. Overspending an allowance is
information the household wants to see, not an error.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Optional, Union

from sqlalchemy import or_, select

from monterico.audit import AuditLogger
from monterico.config import get_settings
from monterico.errors import NotFoundError, ValidationError, parse_input
from monterico.models.audit import AuditEvent, AuditEventBuilder
from monterico.models.ledger import (
    AccountingMode,
    AllowanceAdjustment,
    AllowanceConfigRecord,
    AllowanceConfigUpdate,
    AllowanceOperation,
    AllowanceRecord,
    AllowanceType,
    ExpenseCreate,
    ExpenseRecord,
    ExpenseType,
    IncomeAllocation,
    IncomeCreate,
    IncomeResult,
    PoolSummary,
    ReimbursementList,
    ReimbursementRecord,
    check_month,
    month_bounds,
    month_of,
    quantize_money,
)
from monterico.storage import Database, LedgerRepository
from monterico.storage.repository import (
    allowance_record,
    income_record,
    reimbursement_record,
)
from monterico.storage.tables import (
    AllowanceConfigRow,
    ExpenseRow,
    HouseholdMemberRow,
    IncomeRow,
    PersonalAllowanceRow,
    ReimbursementRow,
    utcnow,
)


ZERO = Decimal("0")


def allowance_portion(config: Optional[AllowanceConfigRow], amount: Decimal) -> Decimal:
    """
    How much of an income goes to the earner's personal allowance.

    percentage: amount * value, rounded to the cent
    fixed:      value, but never more than the income itself
    no active config: nothing, the whole income goes to the pool
    """
    if config is None or not config.is_active:
        return ZERO
    if config.type == AllowanceType.PERCENTAGE.value:
        return quantize_money(amount * Decimal(config.value))
    return quantize_money(min(Decimal(config.value), amount))


class SharedPoolEngine:
    """
    Pool, allowances and reimbursements under shared-pool accounting.

    Usage:
        engine = SharedPoolEngine(database)
        await engine.set_allowance_config(household_id, {...})
        result = await engine.record_income(household_id, {...})
        expense = await engine.record_expense(household_id, {...})
    """

    def __init__(
        self,
        database: Database,
        audit_logger: Optional[AuditLogger] = None,
        default_currency: Optional[str] = None,
    ):
        self._db = database
        self._audit = audit_logger or AuditLogger()
        self._default_currency = default_currency or get_settings().ledger.default_currency

    # =========================================================================
    # INCOME
    # =========================================================================

    async def apply_income(
        self,
        repo: LedgerRepository,
        household_id: str,
        member_id: str,
        amount: Decimal,
        income_date: date,
        allocated_month: Optional[str] = None,
    ) -> tuple[IncomeAllocation, AuditEvent]:
        """
        Divide one income between allowance and pool, inside the caller's
        transaction. This is the only path that increases allocated.
        """
        member = await repo.get_member(member_id, household_id)
        month = allocated_month or month_of(income_date)
        amount = quantize_money(amount)

        config = await repo.get_allowance_config(member_id)
        to_allowance = allowance_portion(config, amount)
        to_pool = amount - to_allowance

        allowance = await repo.get_or_create_allowance(member_id, month)
        allowance = await repo.change_allowance(allowance.id, allocated_delta=to_allowance)
        balance = await repo.change_pool_balance(household_id, to_pool)

        allocation = IncomeAllocation(
            household_member_id=member_id,
            month=month,
            amount=amount,
            allocated_to_allowance=to_allowance,
            contributed_to_pool=to_pool,
            pool_balance=balance,
            allowance=allowance_record(allowance, member.name),
        )
        event = AuditEventBuilder.income_processed(
            household_id=household_id,
            member_id=member_id,
            month=month,
            amount=amount,
            to_allowance=to_allowance,
            to_pool=to_pool,
        )
        return allocation, event

    async def process_income_for_shared_pool(
        self,
        household_id: str,
        member_id: str,
        amount: Decimal,
        income_date: date,
        allocated_month: Optional[str] = None,
    ) -> IncomeAllocation:
        """
        Distribute an income that is already recorded.

        Args:
            household_id: Household the member belongs to
            member_id: Member who earned the income
            amount: Income amount (> 0)
            income_date: Date the income was received
            allocated_month: Book against this YYYY-MM instead of the date's month

        Raises:
            ValidationError: Non-positive amount
            NotFoundError: Unknown member
        """
        if Decimal(amount) <= 0:
            raise ValidationError("Income amount must be greater than 0")
        if allocated_month is not None:
            check_month(allocated_month)

        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            allocation, event = await self.apply_income(
                repo, household_id, member_id, amount, income_date, allocated_month
            )

        await self._audit.log(event)
        return allocation

    async def record_income(
        self,
        household_id: str,
        data: Union[IncomeCreate, dict[str, Any]],
    ) -> IncomeResult:
        """Store an income and distribute it, in one transaction."""
        data = parse_input(IncomeCreate, data)

        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            await repo.get_member(data.household_member_id, household_id)
            income = IncomeRow(
                user_id=household_id,
                household_member_id=data.household_member_id,
                date=data.date,
                description=data.description or data.type,
                amount=data.amount,
                currency=data.currency or self._default_currency,
                type=data.type,
                allocated_to_month=data.effective_month,
            )
            session.add(income)
            await session.flush()

            allocation, event = await self.apply_income(
                repo,
                household_id,
                data.household_member_id,
                data.amount,
                data.date,
                data.allocated_to_month,
            )
            if data.transaction_id:
                await repo.link_transaction(household_id, data.transaction_id, income_id=income.id)
            record = income_record(income)

        await self._audit.log(event)
        return IncomeResult(income=record, allocation=allocation, mode=AccountingMode.SHARED_POOL)

    async def set_allowance_config(
        self,
        household_id: str,
        data: Union[AllowanceConfigUpdate, dict[str, Any]],
    ) -> AllowanceConfigRecord:
        """
        Set a member's allowance rule.

        Only incomes processed afterwards use the new rule. Allowances
        already allocated are never recomputed.
        """
        data = parse_input(AllowanceConfigUpdate, data)

        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            await repo.get_member(data.household_member_id, household_id)
            config = await repo.get_allowance_config(data.household_member_id)
            if config is None:
                config = AllowanceConfigRow(household_member_id=data.household_member_id)
                session.add(config)
            config.type = data.type.value
            config.value = data.value
            config.is_active = True
            await session.flush()

        await self._audit.log(
            AuditEventBuilder.allowance_configured(
                household_id, data.household_member_id, data.type.value, data.value
            )
        )
        return AllowanceConfigRecord(
            household_member_id=data.household_member_id,
            type=data.type,
            value=data.value,
            is_active=True,
        )

    # =========================================================================
    # EXPENSES
    # =========================================================================

    async def record_expense(
        self,
        household_id: str,
        data: Union[ExpenseCreate, dict[str, Any]],
    ) -> ExpenseRecord:
        """
        Record an expense and its effect on the pool.

        paid_from_pool        -> pool balance decreases by the amount
        shared, paid personally -> reimbursement owed to the payer
        personal              -> no pool or allowance effect

        The expense and its pool debit or reimbursement commit together
        or not at all.
        """
        data = parse_input(ExpenseCreate, data)

        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            await repo.get_category(data.category_id, household_id)
            payer = await repo.get_member(data.paid_by_id, household_id)

            needs_reimbursement = (
                data.type == ExpenseType.SHARED and not data.paid_from_pool
            )
            expense = ExpenseRow(
                user_id=household_id,
                date=data.date,
                description=data.description,
                category_id=data.category_id,
                amount=data.amount,
                currency=data.currency or self._default_currency,
                paid_by_id=data.paid_by_id,
                type=data.type.value,
                paid=False,
                paid_from_pool=data.paid_from_pool,
                needs_reimbursement=needs_reimbursement,
            )
            session.add(expense)
            await session.flush()

            events = [
                AuditEventBuilder.expense_recorded(
                    household_id=household_id,
                    expense_id=expense.id,
                    amount=data.amount,
                    mode=AccountingMode.SHARED_POOL.value,
                    expense_type=data.type.value,
                )
            ]

            if data.paid_from_pool:
                balance = await repo.change_pool_balance(household_id, -data.amount)
                events.append(
                    AuditEventBuilder.pool_debited(household_id, expense.id, data.amount, balance)
                )
            elif needs_reimbursement:
                reimbursement = ReimbursementRow(
                    user_id=household_id,
                    expense_id=expense.id,
                    household_member_id=payer.id,
                    month=month_of(data.date),
                    amount=data.amount,
                    description=f"Reimbursement for {data.description}",
                    settled=False,
                )
                session.add(reimbursement)
                await session.flush()
                events.append(
                    AuditEventBuilder.reimbursement_created(
                        household_id, reimbursement.id, expense.id, payer.id, data.amount
                    )
                )

            if data.transaction_id:
                await repo.link_transaction(household_id, data.transaction_id, expense_id=expense.id)

            record = await repo.expense_record(expense, AccountingMode.SHARED_POOL)

        await self._audit.log_all(events)
        return record

    # =========================================================================
    # ALLOWANCES
    # =========================================================================

    async def adjust_allowance(
        self,
        household_id: str,
        member_id: str,
        month: str,
        amount: Decimal,
        operation: Union[AllowanceOperation, str],
    ) -> AllowanceRecord:
        """
        Spend from or refund to a member's allowance.

        Raises:
            NotFoundError: The member has no allowance for that month yet
                           (allowances are created by income allocation)
        """
        data = parse_input(
            AllowanceAdjustment,
            {
                "household_member_id": member_id,
                "month": month,
                "amount": amount,
                "operation": operation,
            },
        )
        spent_delta = data.amount if data.operation == AllowanceOperation.SPEND else -data.amount

        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            member = await repo.get_member(member_id, household_id)
            allowance = await repo.find_allowance(member_id, data.month)
            if allowance is None:
                raise NotFoundError(
                    f"Personal allowance not found for member {member_id} in {data.month}"
                )
            allowance = await repo.change_allowance(allowance.id, spent_delta=spent_delta)
            record = allowance_record(allowance, member.name)

        await self._audit.log(
            AuditEventBuilder.allowance_adjusted(
                household_id, member_id, data.month, data.operation.value,
                data.amount, record.remaining,
            )
        )
        return record

    async def rollover_allowance(
        self,
        household_id: str,
        member_id: str,
        month: str,
    ) -> AllowanceRecord:
        """
        Record how much of the month's allowance carries into the next one.

        Only carried_to is set. Next month's allowance is not created or
        credited.
        """
        check_month(month)
        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            member = await repo.get_member(member_id, household_id)
            allowance = await repo.find_allowance(member_id, month)
            if allowance is None:
                raise NotFoundError(
                    f"Personal allowance not found for member {member_id} in {month}"
                )
            allowance.carried_to = max(allowance.remaining, ZERO)
            await session.flush()
            record = allowance_record(allowance, member.name)

        await self._audit.log(
            AuditEventBuilder.allowance_rolled_over(
                household_id, member_id, month, record.carried_to
            )
        )
        return record

    async def get_allowance(
        self,
        household_id: str,
        member_id: str,
        month: str,
    ) -> AllowanceRecord:
        check_month(month)
        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            member = await repo.get_member(member_id, household_id)
            allowance = await repo.find_allowance(member_id, month)
            if allowance is None:
                raise NotFoundError(
                    f"Personal allowance not found for member {member_id} in {month}"
                )
            return allowance_record(allowance, member.name)

    # =========================================================================
    # REIMBURSEMENTS
    # =========================================================================

    async def settle_reimbursement(
        self,
        household_id: str,
        reimbursement_id: str,
        settled: bool = True,
    ) -> ReimbursementRecord:
        """
        Mark a reimbursement as paid out (or reopen it).

        This is bookkeeping only: the money changed hands outside the
        ledger, so the pool balance is not touched.
        """
        async with self._db.transaction() as session:
            reimbursement = await session.get(
                ReimbursementRow, reimbursement_id, with_for_update=True
            )
            if reimbursement is None or reimbursement.user_id != household_id:
                raise NotFoundError(f"Reimbursement not found: {reimbursement_id}")

            reimbursement.settled = settled
            reimbursement.settled_at = utcnow() if settled else None
            if reimbursement.expense_id:
                expense = await session.get(ExpenseRow, reimbursement.expense_id)
                if expense is not None:
                    expense.needs_reimbursement = not settled
            await session.flush()

            names = await LedgerRepository(session).member_names(household_id)
            record = reimbursement_record(reimbursement, names)

        await self._audit.log(
            AuditEventBuilder.reimbursement_settled(household_id, reimbursement_id, settled)
        )
        return record

    async def list_reimbursements(
        self,
        household_id: str,
        month: Optional[str] = None,
        member_id: Optional[str] = None,
        settled: Optional[bool] = None,
    ) -> ReimbursementList:
        """Reimbursements, newest first. total_owed sums the unsettled ones."""
        query = select(ReimbursementRow).where(ReimbursementRow.user_id == household_id)
        if month is not None:
            query = query.where(ReimbursementRow.month == month)
        if member_id is not None:
            query = query.where(ReimbursementRow.household_member_id == member_id)
        if settled is not None:
            query = query.where(ReimbursementRow.settled.is_(settled))
        query = query.order_by(ReimbursementRow.created_at.desc())

        async with self._db.transaction() as session:
            rows = (await session.execute(query)).scalars().all()
            names = await LedgerRepository(session).member_names(household_id)

        items = [reimbursement_record(r, names) for r in rows]
        return ReimbursementList(
            items=items,
            total_owed=sum((r.amount for r in items if not r.settled), ZERO),
        )

    # =========================================================================
    # POOL
    # =========================================================================

    async def get_pool_balance(self, household_id: str) -> Decimal:
        async with self._db.transaction() as session:
            return await LedgerRepository(session).pool_balance(household_id)

    async def get_pool_summary(self, household_id: str, month: str) -> PoolSummary:
        """Income, spending and allowances for one month, plus the current pool balance."""
        start, end = month_bounds(check_month(month))

        async with self._db.transaction() as session:
            repo = LedgerRepository(session)

            incomes = (
                await session.execute(
                    select(IncomeRow.amount).where(
                        IncomeRow.user_id == household_id,
                        or_(
                            IncomeRow.allocated_to_month == month,
                            (IncomeRow.allocated_to_month.is_(None))
                            & (IncomeRow.date >= start)
                            & (IncomeRow.date < end),
                        ),
                    )
                )
            ).scalars().all()
            total_income = sum(incomes, ZERO)

            total_pool_expenses = await repo.sum_expenses(
                household_id, start, end, paid_from_pool=True
            )
            total_personal_expenses = await repo.sum_expenses(
                household_id, start, end, ExpenseType.PERSONAL
            )

            allowance_rows = (
                await session.execute(
                    select(PersonalAllowanceRow, HouseholdMemberRow.name)
                    .join(
                        HouseholdMemberRow,
                        PersonalAllowanceRow.household_member_id == HouseholdMemberRow.id,
                    )
                    .where(
                        HouseholdMemberRow.user_id == household_id,
                        PersonalAllowanceRow.month == month,
                    )
                    .order_by(HouseholdMemberRow.created_at, HouseholdMemberRow.id)
                )
            ).all()
            member_allowances = [allowance_record(row, name) for row, name in allowance_rows]

            pending = (
                await session.execute(
                    select(ReimbursementRow)
                    .where(
                        ReimbursementRow.user_id == household_id,
                        ReimbursementRow.month == month,
                        ReimbursementRow.settled.is_(False),
                    )
                    .order_by(ReimbursementRow.created_at)
                )
            ).scalars().all()
            names = await repo.member_names(household_id)
            pool_balance = await repo.pool_balance(household_id)

        amount_to_allowances = sum((a.allocated for a in member_allowances), ZERO)
        pending_records = [reimbursement_record(r, names) for r in pending]
        return PoolSummary(
            month=month,
            total_income=total_income,
            total_pool_expenses=total_pool_expenses,
            total_personal_expenses=total_personal_expenses,
            amount_to_pool=total_income - amount_to_allowances,
            amount_to_allowances=amount_to_allowances,
            pool_balance=pool_balance,
            member_allowances=member_allowances,
            pending_reimbursements=pending_records,
            total_owed=sum((r.amount for r in pending_records), ZERO),
        )
