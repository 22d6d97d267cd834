"""
Individual-Accounts Engine

Under individual accounting every shared expense becomes a set of
per-member debts (splits). A member's split on an expense somebody else
paid is money they owe that person until it's marked paid.

DESIGN DECISION: An expense and its splits are written in ONE database
transaction. If the splits can't be computed (mismatched custom amounts,
no active members, unknown member) nothing is written at all, so there is
never an expense without splits.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Any, Optional, Union

from sqlalchemy import and_, or_, select, update

from monterico.accounting.splits import calculate_splits
from monterico.audit import AuditLogger
from monterico.config import get_settings
from monterico.errors import NotFoundError, parse_input
from monterico.models.audit import AuditEvent, AuditEventBuilder
from monterico.models.ledger import (
    AccountingMode,
    BalanceDetail,
    Counterparty,
    ExpenseCreate,
    ExpenseRecord,
    ExpenseType,
    HouseholdBalance,
    MemberBalance,
    SplitParticipant,
    SplitShare,
    SplitType,
)
from monterico.storage import Database, LedgerRepository
from monterico.storage.tables import (
    ExpenseRow,
    ExpenseSplitRow,
    HouseholdMemberRow,
)


ZERO = Decimal("0")


class IndividualAccountsEngine:
    """
    Expenses and debts under individual accounting.

    Usage:
        engine = IndividualAccountsEngine(database)
        expense = await engine.create_expense(household_id, {...})
        balance = await engine.get_member_balance(household_id, member_id)
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
    # EXPENSES
    # =========================================================================

    async def create_expense(
        self,
        household_id: str,
        data: Union[ExpenseCreate, dict[str, Any]],
    ) -> ExpenseRecord:
        """
        Record an expense and its splits.

        Personal expenses get a single paid split for the payer. Shared
        expenses use the custom splits when given, otherwise the requested
        split type (equal by default) over the active members.

        Raises:
            ValidationError: Bad input, or no active members to split over
            NotFoundError: Unknown category, payer or split member
            SplitMismatchError: Custom splits don't add up to the amount
        """
        data = parse_input(ExpenseCreate, data)

        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            expense, events = await self.insert_expense(repo, household_id, data)
            record = await repo.expense_record(expense, AccountingMode.INDIVIDUAL)

        await self._audit.log_all(events)
        return record

    async def insert_expense(
        self,
        repo: LedgerRepository,
        household_id: str,
        data: ExpenseCreate,
    ) -> tuple[ExpenseRow, list[AuditEvent]]:
        """Write the expense and its splits inside the caller's transaction."""
        await repo.get_category(data.category_id, household_id)
        await repo.get_member(data.paid_by_id, household_id)

        policy: Optional[SplitType] = None
        if data.type == ExpenseType.PERSONAL:
            shares = [SplitShare(member_id=data.paid_by_id, amount=data.amount, paid=True)]
        elif data.custom_splits:
            policy = SplitType.CUSTOM
            for split in data.custom_splits:
                await repo.get_member(split.member_id, household_id)
            shares = calculate_splits(
                data.amount, policy, [], data.paid_by_id, data.custom_splits
            )
        else:
            policy = data.split_type or SplitType.EQUAL
            members = await repo.active_members(household_id)
            participants = [
                SplitParticipant(member_id=m.id, ratio=m.split_ratio) for m in members
            ]
            shares = calculate_splits(data.amount, policy, participants, data.paid_by_id)

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
            paid_from_pool=False,
            needs_reimbursement=False,
        )
        repo.session.add(expense)
        await repo.session.flush()

        for share in shares:
            repo.session.add(
                ExpenseSplitRow(
                    expense_id=expense.id,
                    household_member_id=share.member_id,
                    amount=share.amount,
                    paid=share.paid,
                )
            )
        await repo.session.flush()

        if data.transaction_id:
            await repo.link_transaction(household_id, data.transaction_id, expense_id=expense.id)

        events = [
            AuditEventBuilder.expense_recorded(
                household_id=household_id,
                expense_id=expense.id,
                amount=data.amount,
                mode=AccountingMode.INDIVIDUAL.value,
                expense_type=data.type.value,
            ),
        ]
        if policy is not None:
            events.append(
                AuditEventBuilder.splits_created(
                    household_id=household_id,
                    expense_id=expense.id,
                    split_type=policy.value,
                    shares=[s.model_dump() for s in shares],
                )
            )
        return expense, events

    async def delete_expense(self, household_id: str, expense_id: str) -> None:
        """Delete an expense together with its splits and reimbursement."""
        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            expense = await repo.get_expense(expense_id)
            if expense.user_id != household_id:
                raise NotFoundError(f"Expense not found: {expense_id}")
            await repo.delete_expense(expense_id)

        await self._audit.log(AuditEventBuilder.expense_deleted(household_id, expense_id))

    async def mark_split_paid(
        self,
        household_id: str,
        expense_id: str,
        member_id: str,
    ) -> None:
        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            expense = await repo.get_expense(expense_id)
            if expense.user_id != household_id:
                raise NotFoundError(f"Expense not found: {expense_id}")
            result = await session.execute(
                update(ExpenseSplitRow)
                .where(
                    ExpenseSplitRow.expense_id == expense_id,
                    ExpenseSplitRow.household_member_id == member_id,
                )
                .values(paid=True)
            )
            if result.rowcount == 0:
                raise NotFoundError(
                    f"No split for member {member_id} on expense {expense_id}"
                )

        await self._audit.log(
            AuditEventBuilder.split_paid(household_id, expense_id, member_id)
        )

    # =========================================================================
    # BALANCES
    # =========================================================================

    async def get_member_balance(self, household_id: str, member_id: str) -> MemberBalance:
        """
        What a member owes and is owed across all unpaid splits.

        net_balance > 0 means the others owe this member money.
        """
        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            await repo.get_member(member_id, household_id)
            names = await repo.member_names(household_id)
            rows = await session.execute(
                select(ExpenseSplitRow, ExpenseRow)
                .join(ExpenseRow, ExpenseSplitRow.expense_id == ExpenseRow.id)
                .where(
                    ExpenseRow.user_id == household_id,
                    ExpenseSplitRow.paid.is_(False),
                    or_(
                        ExpenseSplitRow.household_member_id == member_id,
                        ExpenseRow.paid_by_id == member_id,
                    ),
                )
                .order_by(ExpenseRow.date, ExpenseRow.created_at)
            )
            pairs = rows.all()

        total_owed = ZERO
        total_owing = ZERO
        details: list[BalanceDetail] = []
        for split, expense in pairs:
            if split.household_member_id == expense.paid_by_id:
                continue
            if split.household_member_id == member_id:
                total_owing += split.amount
                direction, other = "owes", expense.paid_by_id
            else:
                total_owed += split.amount
                direction, other = "owed", split.household_member_id
            details.append(
                BalanceDetail(
                    expense_id=expense.id,
                    description=expense.description,
                    amount=split.amount,
                    date=expense.date,
                    direction=direction,
                    other_member=names.get(other, other),
                )
            )

        return MemberBalance(
            household_member_id=member_id,
            total_owed=total_owed,
            total_owing=total_owing,
            net_balance=total_owed - total_owing,
            details=details,
        )

    async def calculate_household_balances(self, household_id: str) -> list[HouseholdBalance]:
        """Who owes whom, for every member of the household."""
        async with self._db.transaction() as session:
            members = (
                await session.execute(
                    select(HouseholdMemberRow)
                    .where(HouseholdMemberRow.user_id == household_id)
                    .order_by(HouseholdMemberRow.created_at, HouseholdMemberRow.id)
                )
            ).scalars().all()
            rows = await session.execute(
                select(ExpenseSplitRow.household_member_id, ExpenseRow.paid_by_id, ExpenseSplitRow.amount)
                .join(ExpenseRow, ExpenseSplitRow.expense_id == ExpenseRow.id)
                .where(
                    ExpenseRow.user_id == household_id,
                    ExpenseSplitRow.paid.is_(False),
                    ExpenseSplitRow.household_member_id != ExpenseRow.paid_by_id,
                )
            )
            debts = rows.all()

        names = {m.id: m.name for m in members}
        # owes[debtor][creditor] = amount
        owes: dict[str, dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
        for debtor, creditor, amount in debts:
            owes[debtor][creditor] += amount

        balances = []
        for member in members:
            owes_list = [
                Counterparty(household_member_id=c, member_name=names.get(c, c), amount=a)
                for c, a in owes[member.id].items()
            ]
            owed_by_list = [
                Counterparty(
                    household_member_id=debtor,
                    member_name=names.get(debtor, debtor),
                    amount=creditors[member.id],
                )
                for debtor, creditors in owes.items()
                if member.id in creditors
            ]
            balances.append(
                HouseholdBalance(
                    household_member_id=member.id,
                    member_name=member.name,
                    net_balance=(
                        sum((c.amount for c in owed_by_list), ZERO)
                        - sum((c.amount for c in owes_list), ZERO)
                    ),
                    owes=owes_list,
                    owed_by=owed_by_list,
                )
            )
        return balances

    async def settle_debts(self, household_id: str, member_a: str, member_b: str) -> Decimal:
        """
        Mark every unpaid split between two members as paid.

        Returns the total amount of the splits that were settled (both
        directions added together).
        """
        async with self._db.transaction() as session:
            repo = LedgerRepository(session)
            await repo.get_member(member_a, household_id)
            await repo.get_member(member_b, household_id)

            rows = await session.execute(
                select(ExpenseSplitRow)
                .join(ExpenseRow, ExpenseSplitRow.expense_id == ExpenseRow.id)
                .where(
                    ExpenseRow.user_id == household_id,
                    ExpenseSplitRow.paid.is_(False),
                    or_(
                        and_(
                            ExpenseSplitRow.household_member_id == member_a,
                            ExpenseRow.paid_by_id == member_b,
                        ),
                        and_(
                            ExpenseSplitRow.household_member_id == member_b,
                            ExpenseRow.paid_by_id == member_a,
                        ),
                    ),
                )
                .with_for_update()
            )
            splits = rows.scalars().all()
            settled = sum((s.amount for s in splits), ZERO)
            if splits:
                await session.execute(
                    update(ExpenseSplitRow)
                    .where(ExpenseSplitRow.id.in_([s.id for s in splits]))
                    .values(paid=True)
                    .execution_options(synchronize_session=False)
                )

        await self._audit.log(
            AuditEventBuilder.debts_settled(household_id, member_a, member_b, settled, len(splits))
        )
        return settled
