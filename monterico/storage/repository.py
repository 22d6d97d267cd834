"""
Ledger Repository

Query helpers shared by the accounting engines, the gate and the bank
sync. A LedgerRepository wraps the session of ONE transaction and never
commits on its own.

DESIGN DECISION: Balances are never read, modified in Python and written
back. Pool and allowance changes are relative UPDATE statements
(col = col + :delta), so two concurrent operations can't lose each
other's increment. An allowance's allocated/spent/remaining columns are
changed by the same statement, which keeps remaining == allocated - spent.

Singleton rows (settings, pool, one allowance per member and month) are
created with INSERT ... ON CONFLICT DO NOTHING and then read, so two
transactions creating the same row both end up with the one that won.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from monterico.errors import NotFoundError
from monterico.models.ledger import (
    AccountingMode,
    AllowanceRecord,
    ExpenseRecord,
    ExpenseSplitRecord,
    ExpenseType,
    IncomeRecord,
    ReimbursementRecord,
)
from monterico.storage.tables import (
    AllowanceConfigRow,
    BankConnectionRow,
    BankTransactionRow,
    CategoryRow,
    ExpenseRow,
    ExpenseSplitRow,
    HouseholdMemberRow,
    HouseholdSettingsRow,
    IncomeRow,
    PersonalAllowanceRow,
    ReimbursementRow,
    SharedPoolRow,
    UserRow,
)


ZERO = Decimal("0")


class LedgerRepository:
    """Reads and relative writes inside one open transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _insert_if_missing(self, model, **values) -> bool:
        """
        Insert a row unless one with the same key already exists.

        Returns False when the dialect has no ON CONFLICT clause, in which
        case the caller falls back to add() and flush().
        """
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            statement = postgresql.insert(model).values(**values)
        elif dialect == "sqlite":
            statement = sqlite.insert(model).values(**values)
        else:
            return False
        await self.session.execute(statement.on_conflict_do_nothing())
        return True

    # =========================================================================
    # HOUSEHOLD
    # =========================================================================

    async def get_user(self, user_id: str) -> UserRow:
        user = await self.session.get(UserRow, user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    async def get_user_by_email(self, email: str) -> Optional[UserRow]:
        result = await self.session.execute(
            select(UserRow).where(UserRow.email == email)
        )
        return result.scalar_one_or_none()

    async def get_member(
        self,
        member_id: str,
        household_id: Optional[str] = None,
    ) -> HouseholdMemberRow:
        """Fetch a member, optionally checking it belongs to the household."""
        member = await self.session.get(HouseholdMemberRow, member_id)
        if member is None or (household_id is not None and member.user_id != household_id):
            raise NotFoundError(f"Household member not found: {member_id}")
        return member

    async def active_members(self, household_id: str) -> list[HouseholdMemberRow]:
        """Active members in creation order (the order splits are computed in)."""
        result = await self.session.execute(
            select(HouseholdMemberRow)
            .where(
                HouseholdMemberRow.user_id == household_id,
                HouseholdMemberRow.is_active.is_(True),
            )
            .order_by(HouseholdMemberRow.created_at, HouseholdMemberRow.id)
        )
        return list(result.scalars())

    async def member_names(self, household_id: str) -> dict[str, str]:
        result = await self.session.execute(
            select(HouseholdMemberRow.id, HouseholdMemberRow.name)
            .where(HouseholdMemberRow.user_id == household_id)
        )
        return {row.id: row.name for row in result}

    async def get_category(self, category_id: str, household_id: str) -> CategoryRow:
        category = await self.session.get(CategoryRow, category_id)
        if category is None or category.user_id != household_id:
            raise NotFoundError(f"Category not found: {category_id}")
        return category

    async def get_or_create_settings(self, household_id: str) -> HouseholdSettingsRow:
        values = dict(
            household_id=household_id,
            accounting_mode=AccountingMode.INDIVIDUAL.value,
        )
        if not await self._insert_if_missing(HouseholdSettingsRow, **values):
            if await self.session.get(HouseholdSettingsRow, household_id) is None:
                self.session.add(HouseholdSettingsRow(**values))
                await self.session.flush()
        return await self.session.get(
            HouseholdSettingsRow, household_id, with_for_update=True
        )

    async def accounting_mode(self, household_id: str) -> AccountingMode:
        settings = await self.get_or_create_settings(household_id)
        return AccountingMode(settings.accounting_mode)

    # =========================================================================
    # SHARED POOL
    # =========================================================================

    async def get_or_create_pool(self, household_id: str) -> SharedPoolRow:
        if not await self._insert_if_missing(SharedPoolRow, household_id=household_id, balance=ZERO):
            if await self.session.get(SharedPoolRow, household_id) is None:
                self.session.add(SharedPoolRow(household_id=household_id, balance=ZERO))
                await self.session.flush()
        return await self.session.get(SharedPoolRow, household_id)

    async def pool_balance(self, household_id: str) -> Decimal:
        result = await self.session.execute(
            select(SharedPoolRow.balance).where(SharedPoolRow.household_id == household_id)
        )
        balance = result.scalar_one_or_none()
        return balance if balance is not None else ZERO

    async def change_pool_balance(self, household_id: str, delta: Decimal) -> Decimal:
        """Apply balance += delta and return the new balance."""
        await self.get_or_create_pool(household_id)
        await self.session.execute(
            update(SharedPoolRow)
            .where(SharedPoolRow.household_id == household_id)
            .values(balance=SharedPoolRow.balance + delta)
            .execution_options(synchronize_session=False)
        )
        return await self.pool_balance(household_id)

    # =========================================================================
    # ALLOWANCES
    # =========================================================================

    async def get_allowance_config(self, member_id: str) -> Optional[AllowanceConfigRow]:
        result = await self.session.execute(
            select(AllowanceConfigRow).where(
                AllowanceConfigRow.household_member_id == member_id
            )
        )
        return result.scalar_one_or_none()

    async def find_allowance(
        self,
        member_id: str,
        month: str,
    ) -> Optional[PersonalAllowanceRow]:
        result = await self.session.execute(
            select(PersonalAllowanceRow)
            .where(
                PersonalAllowanceRow.household_member_id == member_id,
                PersonalAllowanceRow.month == month,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create_allowance(
        self,
        member_id: str,
        month: str,
    ) -> PersonalAllowanceRow:
        values = dict(
            household_member_id=member_id,
            month=month,
            allocated=ZERO,
            spent=ZERO,
            remaining=ZERO,
            carried_to=ZERO,
        )
        if not await self._insert_if_missing(PersonalAllowanceRow, **values):
            if await self.find_allowance(member_id, month) is None:
                self.session.add(PersonalAllowanceRow(**values))
                await self.session.flush()
        return await self.find_allowance(member_id, month)

    async def change_allowance(
        self,
        allowance_id: str,
        allocated_delta: Decimal = ZERO,
        spent_delta: Decimal = ZERO,
    ) -> PersonalAllowanceRow:
        """Move allocated and spent, and remaining with them, in one statement."""
        await self.session.execute(
            update(PersonalAllowanceRow)
            .where(PersonalAllowanceRow.id == allowance_id)
            .values(
                allocated=PersonalAllowanceRow.allocated + allocated_delta,
                spent=PersonalAllowanceRow.spent + spent_delta,
                remaining=PersonalAllowanceRow.remaining + allocated_delta - spent_delta,
            )
            .execution_options(synchronize_session=False)
        )
        allowance = await self.session.get(PersonalAllowanceRow, allowance_id)
        await self.session.refresh(allowance)
        return allowance

    # =========================================================================
    # EXPENSES
    # =========================================================================

    async def get_expense(self, expense_id: str) -> ExpenseRow:
        expense = await self.session.get(ExpenseRow, expense_id)
        if expense is None:
            raise NotFoundError(f"Expense not found: {expense_id}")
        return expense

    async def splits_for(self, expense_id: str) -> list[ExpenseSplitRow]:
        result = await self.session.execute(
            select(ExpenseSplitRow)
            .where(ExpenseSplitRow.expense_id == expense_id)
            .order_by(ExpenseSplitRow.id)
        )
        return list(result.scalars())

    async def reimbursement_for(self, expense_id: str) -> Optional[ReimbursementRow]:
        result = await self.session.execute(
            select(ReimbursementRow).where(ReimbursementRow.expense_id == expense_id)
        )
        return result.scalar_one_or_none()

    async def delete_expense(self, expense_id: str) -> None:
        """Remove an expense with its splits and reimbursement, unlinking bank rows."""
        await self.session.execute(
            delete(ExpenseSplitRow).where(ExpenseSplitRow.expense_id == expense_id)
        )
        await self.session.execute(
            delete(ReimbursementRow).where(ReimbursementRow.expense_id == expense_id)
        )
        await self.session.execute(
            update(BankTransactionRow)
            .where(BankTransactionRow.expense_id == expense_id)
            .values(linked_to_expense=False, expense_id=None)
        )
        await self.session.execute(delete(ExpenseRow).where(ExpenseRow.id == expense_id))

    async def delete_income(self, income_id: str) -> None:
        await self.session.execute(
            update(BankTransactionRow)
            .where(BankTransactionRow.income_id == income_id)
            .values(linked_to_income=False, income_id=None)
        )
        await self.session.execute(delete(IncomeRow).where(IncomeRow.id == income_id))

    async def sum_expenses(
        self,
        household_id: str,
        start: date,
        end: date,
        expense_type: Optional[ExpenseType] = None,
        paid_from_pool: Optional[bool] = None,
    ) -> Decimal:
        query = select(func.coalesce(func.sum(ExpenseRow.amount), ZERO)).where(
            ExpenseRow.user_id == household_id,
            ExpenseRow.date >= start,
            ExpenseRow.date < end,
        )
        if expense_type is not None:
            query = query.where(ExpenseRow.type == expense_type.value)
        if paid_from_pool is not None:
            query = query.where(ExpenseRow.paid_from_pool.is_(paid_from_pool))
        result = await self.session.execute(query)
        return Decimal(result.scalar_one())

    # =========================================================================
    # BANK LINKS
    # =========================================================================

    async def link_transaction(
        self,
        household_id: str,
        transaction_id: str,
        expense_id: Optional[str] = None,
        income_id: Optional[str] = None,
    ) -> None:
        """Mark a stored bank transaction as turned into an expense or income."""
        bank_tx = await self.session.get(BankTransactionRow, transaction_id)
        if bank_tx is None or bank_tx.connection_id is None:
            raise NotFoundError(f"Bank transaction not found: {transaction_id}")
        # Ownership goes through the connection
        connection = await self.session.get(BankConnectionRow, bank_tx.connection_id)
        if connection is None or connection.user_id != household_id:
            raise NotFoundError(f"Bank transaction not found: {transaction_id}")

        if expense_id is not None:
            bank_tx.linked_to_expense = True
            bank_tx.expense_id = expense_id
        if income_id is not None:
            bank_tx.linked_to_income = True
            bank_tx.income_id = income_id
        await self.session.flush()

    # =========================================================================
    # RECORD CONVERSION
    # =========================================================================

    async def expense_record(self, expense: ExpenseRow, mode: AccountingMode) -> ExpenseRecord:
        names = await self.member_names(expense.user_id)
        category = await self.session.get(CategoryRow, expense.category_id)
        splits = await self.splits_for(expense.id)
        reimbursement = await self.reimbursement_for(expense.id)
        return ExpenseRecord(
            id=expense.id,
            household_id=expense.user_id,
            date=expense.date,
            description=expense.description,
            category_id=expense.category_id,
            category_name=category.name if category else None,
            amount=expense.amount,
            currency=expense.currency,
            paid_by_id=expense.paid_by_id,
            paid_by_name=names.get(expense.paid_by_id),
            type=ExpenseType(expense.type),
            paid=expense.paid,
            paid_from_pool=expense.paid_from_pool,
            needs_reimbursement=expense.needs_reimbursement,
            splits=[
                ExpenseSplitRecord(
                    id=s.id,
                    household_member_id=s.household_member_id,
                    member_name=names.get(s.household_member_id),
                    amount=s.amount,
                    paid=s.paid,
                )
                for s in splits
            ],
            reimbursement=(
                reimbursement_record(reimbursement, names) if reimbursement else None
            ),
            mode=mode,
            created_at=expense.created_at,
        )


def reimbursement_record(
    row: ReimbursementRow,
    names: Optional[dict[str, str]] = None,
) -> ReimbursementRecord:
    return ReimbursementRecord(
        id=row.id,
        expense_id=row.expense_id,
        household_member_id=row.household_member_id,
        member_name=(names or {}).get(row.household_member_id),
        month=row.month,
        amount=row.amount,
        description=row.description,
        settled=row.settled,
        settled_at=row.settled_at,
        created_at=row.created_at,
    )


def allowance_record(
    row: PersonalAllowanceRow,
    member_name: Optional[str] = None,
) -> AllowanceRecord:
    return AllowanceRecord(
        household_member_id=row.household_member_id,
        member_name=member_name,
        month=row.month,
        allocated=row.allocated,
        spent=row.spent,
        remaining=row.remaining,
        carried_to=row.carried_to,
    )


def income_record(row: IncomeRow) -> IncomeRecord:
    return IncomeRecord(
        id=row.id,
        household_member_id=row.household_member_id,
        date=row.date,
        description=row.description,
        amount=row.amount,
        currency=row.currency,
        type=row.type,
        allocated_to_month=row.allocated_to_month,
    )
