"""
Tests for the individual-accounts engine.
"""

from datetime import date
from decimal import Decimal

import pytest

from monterico.errors import NotFoundError, SplitMismatchError, ValidationError
from monterico.models.audit import AuditEventType
from monterico.models.ledger import AccountingMode, ExpenseType
from monterico.storage.tables import ExpenseRow, ExpenseSplitRow, HouseholdMemberRow

from conftest import count_rows


def expense(household, **overrides) -> dict:
    payload = {
        "date": date(2024, 3, 5),
        "description": "Weekly groceries",
        "category_id": household.category,
        "amount": "100.00",
        "paid_by_id": household.ana,
        "type": "shared",
        "split_type": "equal",
    }
    payload.update(overrides)
    return payload


class TestCreateExpense:
    """Tests for recording expenses with splits."""

    async def test_equal_split(self, individual_engine, household):
        """Test a shared expense is split equally and the payer's share is paid."""
        record = await individual_engine.create_expense(household.id, expense(household))

        assert record.mode == AccountingMode.INDIVIDUAL
        assert record.amount == Decimal("100.00")
        assert record.currency == "EUR"
        assert record.split_total == record.amount
        shares = {s.household_member_id: (s.amount, s.paid) for s in record.splits}
        assert shares == {
            household.ana: (Decimal("50.00"), True),
            household.ben: (Decimal("50.00"), False),
        }
        assert record.paid_by_name == "Ana"
        assert record.category_name == "Groceries"

    async def test_ratio_split_uses_member_ratios(self, database, individual_engine, household):
        """Test ratio splits follow each member's split_ratio."""
        async with database.transaction() as session:
            ana = await session.get(HouseholdMemberRow, household.ana)
            ben = await session.get(HouseholdMemberRow, household.ben)
            ana.split_ratio = Decimal("0.7")
            ben.split_ratio = Decimal("0.3")

        record = await individual_engine.create_expense(
            household.id, expense(household, split_type="ratio")
        )
        shares = {s.household_member_id: s.amount for s in record.splits}
        assert shares == {household.ana: Decimal("70.00"), household.ben: Decimal("30.00")}

    async def test_odd_cents_still_add_up(self, individual_engine, household):
        """Test 0.01 precision amounts split without losing a cent."""
        record = await individual_engine.create_expense(
            household.id, expense(household, amount="10.01")
        )
        assert record.split_total == Decimal("10.01")

    async def test_custom_split(self, individual_engine, household):
        """Test matching custom splits are stored as given."""
        record = await individual_engine.create_expense(
            household.id,
            expense(
                household,
                split_type="custom",
                custom_splits=[
                    {"member_id": household.ana, "amount": "80.00"},
                    {"member_id": household.ben, "amount": "20.00"},
                ],
            ),
        )
        shares = {s.household_member_id: s.amount for s in record.splits}
        assert shares == {household.ana: Decimal("80.00"), household.ben: Decimal("20.00")}

    async def test_custom_mismatch_writes_nothing(self, database, individual_engine, household):
        """Test a split mismatch leaves no expense and no splits behind."""
        with pytest.raises(SplitMismatchError):
            await individual_engine.create_expense(
                household.id,
                expense(
                    household,
                    split_type="custom",
                    custom_splits=[
                        {"member_id": household.ana, "amount": "60.00"},
                        {"member_id": household.ben, "amount": "30.00"},
                    ],
                ),
            )
        assert await count_rows(database, ExpenseRow) == 0
        assert await count_rows(database, ExpenseSplitRow) == 0

    async def test_custom_split_unknown_member(self, database, individual_engine, household):
        """Test a custom split for a stranger is rejected."""
        with pytest.raises(NotFoundError):
            await individual_engine.create_expense(
                household.id,
                expense(
                    household,
                    split_type="custom",
                    custom_splits=[
                        {"member_id": household.ana, "amount": "50.00"},
                        {"member_id": "someone-else", "amount": "50.00"},
                    ],
                ),
            )
        assert await count_rows(database, ExpenseRow) == 0

    async def test_personal_expense_single_paid_split(self, individual_engine, household):
        """Test a personal expense belongs entirely to the payer."""
        record = await individual_engine.create_expense(
            household.id, expense(household, type="personal", split_type=None)
        )
        assert record.type == ExpenseType.PERSONAL
        assert len(record.splits) == 1
        assert record.splits[0].household_member_id == household.ana
        assert record.splits[0].amount == Decimal("100.00")
        assert record.splits[0].paid is True

    async def test_unknown_category(self, individual_engine, household):
        """Test an unknown category raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await individual_engine.create_expense(
                household.id, expense(household, category_id="nope")
            )

    async def test_invalid_amount(self, individual_engine, household):
        """Test non-positive and over-precise amounts are rejected."""
        with pytest.raises(ValidationError):
            await individual_engine.create_expense(household.id, expense(household, amount="0"))
        with pytest.raises(ValidationError):
            await individual_engine.create_expense(household.id, expense(household, amount="1.234"))

    async def test_inactive_members_excluded(self, database, individual_engine, household):
        """Test only active members take part in a split."""
        async with database.transaction() as session:
            ben = await session.get(HouseholdMemberRow, household.ben)
            ben.is_active = False

        record = await individual_engine.create_expense(household.id, expense(household))
        assert [(s.household_member_id, s.amount) for s in record.splits] == [
            (household.ana, Decimal("100.00"))
        ]

    async def test_audit_events(self, individual_engine, household, audit_storage):
        """Test expense and split events are logged after commit."""
        record = await individual_engine.create_expense(household.id, expense(household))
        types = [e.event_type for e in audit_storage.events]
        assert AuditEventType.EXPENSE_RECORDED in types
        assert AuditEventType.SPLITS_CREATED in types
        assert all(e.entity_id == record.id for e in audit_storage.events)


class TestBalances:
    """Tests for debts between members."""

    async def test_member_balance(self, individual_engine, household):
        """Test the payer is owed the other member's share."""
        await individual_engine.create_expense(household.id, expense(household))

        ana = await individual_engine.get_member_balance(household.id, household.ana)
        ben = await individual_engine.get_member_balance(household.id, household.ben)

        assert ana.total_owed == Decimal("50.00")
        assert ana.total_owing == Decimal("0")
        assert ana.net_balance == Decimal("50.00")
        assert ben.net_balance == Decimal("-50.00")
        assert ben.details[0].direction == "owes"
        assert ben.details[0].other_member == "Ana"

    async def test_household_balances(self, individual_engine, household):
        """Test who-owes-whom nets both directions."""
        await individual_engine.create_expense(household.id, expense(household))
        await individual_engine.create_expense(
            household.id, expense(household, amount="30.00", paid_by_id=household.ben)
        )

        balances = {
            b.household_member_id: b
            for b in await individual_engine.calculate_household_balances(household.id)
        }
        assert balances[household.ana].net_balance == Decimal("35.00")
        assert balances[household.ben].net_balance == Decimal("-35.00")
        assert balances[household.ben].owes[0].amount == Decimal("50.00")
        assert balances[household.ben].owed_by[0].amount == Decimal("15.00")

    async def test_mark_split_paid(self, individual_engine, household):
        """Test a paid split no longer counts as a debt."""
        record = await individual_engine.create_expense(household.id, expense(household))
        await individual_engine.mark_split_paid(household.id, record.id, household.ben)

        ben = await individual_engine.get_member_balance(household.id, household.ben)
        assert ben.total_owing == Decimal("0")

    async def test_mark_split_paid_unknown_member(self, individual_engine, household):
        """Test marking a split that doesn't exist."""
        record = await individual_engine.create_expense(household.id, expense(household))
        with pytest.raises(NotFoundError):
            await individual_engine.mark_split_paid(household.id, record.id, "ghost")

    async def test_settle_debts(self, individual_engine, household):
        """Test settling clears both directions and returns the gross total."""
        await individual_engine.create_expense(household.id, expense(household))
        await individual_engine.create_expense(
            household.id, expense(household, amount="30.00", paid_by_id=household.ben)
        )

        settled = await individual_engine.settle_debts(household.id, household.ana, household.ben)
        assert settled == Decimal("65.00")

        balances = await individual_engine.calculate_household_balances(household.id)
        assert all(b.net_balance == 0 for b in balances)

    async def test_delete_expense_removes_splits(self, database, individual_engine, household):
        """Test deleting an expense removes its splits too."""
        record = await individual_engine.create_expense(household.id, expense(household))
        await individual_engine.delete_expense(household.id, record.id)

        assert await count_rows(database, ExpenseRow) == 0
        assert await count_rows(database, ExpenseSplitRow) == 0

    async def test_delete_foreign_expense(self, individual_engine, household):
        """Test an expense of another household can't be deleted."""
        record = await individual_engine.create_expense(household.id, expense(household))
        with pytest.raises(NotFoundError):
            await individual_engine.delete_expense("other-household", record.id)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
