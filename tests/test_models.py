"""
Tests for Monterico models and the audit trail

Test strategy:
1. Unit tests for models and month helpers
2. Audit events, including the Google Sheets row format
3. No real API calls in tests (the worksheet is a mock)
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from monterico.audit import AuditLogger
from monterico.errors import ValidationError, parse_input
from monterico.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from monterico.models.ledger import (
    AllowanceAdjustment,
    AllowanceConfigUpdate,
    ExpenseCreate,
    IncomeCreate,
    check_month,
    month_bounds,
    month_of,
    next_month,
    quantize_money,
)
from monterico.storage import GoogleSheetsAuditStorage, InMemoryAuditStorage, StorageError
from monterico.storage.tables import utcnow


class TestLedgerModels:
    """Tests for ledger input models."""

    def test_expense_defaults(self):
        """Test an expense is shared and not paid from the pool by default."""
        expense = ExpenseCreate(
            date=date(2024, 3, 1),
            description="  Groceries  ",
            category_id="cat-1",
            amount=Decimal("12.50"),
            paid_by_id="m1",
        )
        assert expense.description == "Groceries"
        assert expense.type.value == "shared"
        assert expense.paid_from_pool is False
        assert expense.split_type is None

    def test_expense_rejects_sub_cent_amount(self):
        """Test amounts with more than two decimals are rejected, not rounded."""
        with pytest.raises(PydanticValidationError):
            ExpenseCreate(
                date=date(2024, 3, 1),
                description="Coffee",
                category_id="cat-1",
                amount=Decimal("3.999"),
                paid_by_id="m1",
            )

    def test_expense_rejects_non_positive_amount(self):
        """Test zero and negative amounts are rejected."""
        with pytest.raises(PydanticValidationError):
            ExpenseCreate(
                date=date(2024, 3, 1),
                description="Refund",
                category_id="cat-1",
                amount=Decimal("-5"),
                paid_by_id="m1",
            )

    def test_income_effective_month(self):
        """Test an income books to its date's month unless told otherwise."""
        income = IncomeCreate(
            household_member_id="m1",
            date=date(2024, 3, 28),
            amount=Decimal("2000.00"),
            type="salary",
        )
        assert income.effective_month == "2024-03"

        early = income.model_copy(update={"allocated_to_month": "2024-04"})
        assert early.effective_month == "2024-04"

    def test_income_rejects_bad_month(self):
        """Test allocated_to_month must be YYYY-MM."""
        with pytest.raises(PydanticValidationError):
            IncomeCreate(
                household_member_id="m1",
                date=date(2024, 3, 28),
                amount=Decimal("10.00"),
                type="bonus",
                allocated_to_month="2024-13",
            )

    def test_percentage_allowance_capped_at_one(self):
        """Test a percentage allowance above 1 is rejected."""
        with pytest.raises(PydanticValidationError, match="between 0 and 1"):
            AllowanceConfigUpdate(household_member_id="m1", type="percentage", value=Decimal("1.5"))

    def test_fixed_allowance_above_one(self):
        """Test fixed allowances are plain amounts."""
        config = AllowanceConfigUpdate(household_member_id="m1", type="fixed", value=Decimal("300"))
        assert config.value == Decimal("300")

    def test_adjustment_operation(self):
        """Test only spend and refund are valid operations."""
        with pytest.raises(PydanticValidationError):
            AllowanceAdjustment(
                household_member_id="m1",
                month="2024-03",
                amount=Decimal("5.00"),
                operation="withdraw",
            )

    def test_parse_input_wraps_errors(self):
        """Test parse_input turns model errors into a ValidationError listing each field."""
        with pytest.raises(ValidationError) as exc_info:
            parse_input(IncomeCreate, {"household_member_id": "m1"})
        assert len(exc_info.value.errors) >= 3
        assert exc_info.value.code == "VALIDATION_ERROR"


class TestMonthHelpers:
    """Tests for YYYY-MM helpers."""

    def test_month_of(self):
        """Test a date's month."""
        assert month_of(date(2024, 1, 31)) == "2024-01"

    def test_next_month_wraps_year(self):
        """Test December rolls into January of the next year."""
        assert next_month("2024-12") == "2025-01"
        assert next_month("2024-02") == "2024-03"

    def test_month_bounds(self):
        """Test the half-open date range of a month."""
        assert month_bounds("2024-02") == (date(2024, 2, 1), date(2024, 3, 1))

    @pytest.mark.parametrize("bad", ["2024-3", "2024-00", "24-03", "march"])
    def test_check_month_rejects(self, bad):
        """Test malformed months are rejected."""
        with pytest.raises(ValidationError):
            check_month(bad)

    def test_quantize_money(self):
        """Test computed amounts round half up to the cent."""
        assert quantize_money(Decimal("0.125")) == Decimal("0.13")
        assert quantize_money(Decimal("10")) == Decimal("10.00")


class TestAuditModels:
    """Tests for audit-related models."""

    def test_audit_event_creation(self):
        """Test AuditEvent model creation."""
        event = AuditEvent(
            event_type=AuditEventType.EXPENSE_RECORDED,
            description="Expense recorded",
        )
        assert event.event_type == AuditEventType.EXPENSE_RECORDED
        assert event.severity == AuditSeverity.INFO

    def test_timestamp_is_utc(self):
        """Test events are stamped with an aware UTC time."""
        event = AuditEventBuilder.mfa_method_removed("u1", "mfa-1")
        assert event.timestamp.utcoffset() == timedelta(0)
        assert event.to_sheets_row()[1].endswith("+00:00")

    def test_row_timestamps_are_naive_utc(self):
        """Test column defaults hold UTC without tzinfo, the form DateTime columns store."""
        stamp = utcnow()
        assert stamp.tzinfo is None
        assert abs(datetime.now(timezone.utc).replace(tzinfo=None) - stamp) < timedelta(seconds=5)

    def test_audit_event_to_log_dict(self):
        """Test Decimal details become strings in the log dictionary."""
        event = AuditEventBuilder.expense_recorded(
            household_id="h1",
            expense_id="e1",
            amount=Decimal("42.50"),
            mode="individual",
            expense_type="shared",
        )
        log_dict = event.to_log_dict()
        assert "event_id" in log_dict
        assert log_dict["event_type"] == "expense_recorded"
        assert log_dict["details"]["amount"] == "42.50"

    def test_audit_event_to_sheets_row(self):
        """Test conversion to sheets row."""
        event = AuditEventBuilder.mfa_method_removed("u1", "mfa-1")
        row = event.to_sheets_row()
        assert len(row) == 13  # Expected number of columns
        assert row[2] == "mfa_method_removed"  # event_type
        assert row[6] == "mfa-1"  # entity_id
        assert row[12] == "True"  # is_user_action

    def test_replay_failed_is_an_error(self):
        """Test a failed replay is logged at error severity with its message."""
        correlation_id = uuid4()
        event = AuditEventBuilder.replay_failed("h1", "inc-1", "boom", correlation_id)
        assert event.severity == AuditSeverity.ERROR
        assert event.entity_id == "inc-1"
        assert event.error_message == "boom"
        assert event.correlation_id == correlation_id

    def test_bank_mfa_denied_carries_code(self):
        """Test the refusal reason is kept as the error code."""
        event = AuditEventBuilder.bank_mfa_denied("u1", "BANK_MFA_EXPIRED")
        assert event.event_type == AuditEventType.BANK_MFA_DENIED
        assert event.error_code == "BANK_MFA_EXPIRED"

    def test_login_failure_is_a_warning(self):
        """Test failed logins are warnings."""
        event = AuditEventBuilder.login(None, "x@example.com", succeeded=False)
        assert event.event_type == AuditEventType.LOGIN_FAILED
        assert event.severity == AuditSeverity.WARNING


class FakeWorksheet:
    """Stands in for a gspread worksheet."""

    def __init__(self):
        self.rows: list[list] = [["event_id", "timestamp", "event_type"]]

    def append_row(self, row, value_input_option="RAW"):
        self.rows.append([str(v) for v in row])

    def get_all_values(self):
        return self.rows


class TestGoogleSheetsAuditStorage:
    """Tests for the Google Sheets audit sink against a mock worksheet."""

    @pytest.fixture
    def storage(self):
        client = MagicMock()
        client.get_audit_sheet.return_value = FakeWorksheet()
        return GoogleSheetsAuditStorage(client)

    async def test_events_read_back(self, storage):
        """Test appended events are read back by correlation id in order."""
        correlation_id = uuid4()
        first = AuditEventBuilder.mode_switched("h1", "individual", "shared_pool", 2, correlation_id)
        second = AuditEventBuilder.replay_failed("h1", "inc-9", "boom", correlation_id)
        await storage.append_event(first)
        await storage.append_event(second)
        await storage.append_event(AuditEventBuilder.mfa_method_removed("u1", "mfa-1"))

        events = await storage.get_events_by_correlation_id(correlation_id)

        assert [e.event_id for e in events] == [first.event_id, second.event_id]
        assert events[0].details["incomes_replayed"] == 2
        assert events[1].error_message == "boom"
        assert events[0].is_user_action is True

    async def test_malformed_rows_skipped(self, storage):
        """Test rows that aren't events are ignored."""
        sheet = storage._client.get_audit_sheet()
        sheet.rows.append(["not-a-uuid", "yesterday", "???"])
        await storage.append_event(AuditEventBuilder.mfa_method_removed("u1", "mfa-1"))

        events = await storage.get_events_by_entity("mfa_method", "mfa-1")
        assert len(events) == 1


class BrokenStorage(InMemoryAuditStorage):
    async def append_event(self, event):
        raise StorageError("sheet unavailable")


class TestAuditLogger:
    """Tests for AuditLogger."""

    async def test_logs_to_storage(self):
        """Test events reach the configured sink."""
        storage = InMemoryAuditStorage()
        logger = AuditLogger(storage)
        assert await logger.log(AuditEventBuilder.mfa_method_removed("u1", "m1")) is True
        assert len(storage.events) == 1

    async def test_storage_failure_does_not_raise(self):
        """Test a broken sink is reported, not raised."""
        logger = AuditLogger(BrokenStorage())
        assert await logger.log(AuditEventBuilder.mfa_method_removed("u1", "m1")) is False

    async def test_without_storage(self):
        """Test local-only logging always succeeds."""
        assert await AuditLogger().log(AuditEventBuilder.mfa_method_removed("u1", "m1")) is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
