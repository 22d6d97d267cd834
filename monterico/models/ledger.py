"""
Core Ledger Models for Monterico

These models define the strict schemas for all data flowing through
the accounting engines. They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: Money is always Decimal with at most two decimal places.
Inputs with more precision are rejected, never rounded silently.
Amounts the engines compute (splits, allowance percentages) are
quantized to the cent with quantize_money().
"""

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)

from monterico.errors import ValidationError


CENT = Decimal("0.01")

_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

MonthStr = Annotated[
    str,
    Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$", description="Month as YYYY-MM"),
]


def quantize_money(value: Decimal) -> Decimal:
    """Round a computed amount to the cent (half up)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def month_of(day: date) -> str:
    """Calendar month of a date as YYYY-MM."""
    return f"{day.year:04d}-{day.month:02d}"


def next_month(month: str) -> str:
    year, mon = (int(part) for part in month.split("-"))
    if mon == 12:
        return f"{year + 1:04d}-01"
    return f"{year:04d}-{mon + 1:02d}"


def check_month(month: str) -> str:
    """Return month unchanged if it is a valid YYYY-MM, else raise ValidationError."""
    if not isinstance(month, str) or not _MONTH_RE.match(month):
        raise ValidationError(f"Month must be YYYY-MM, got {month!r}")
    return month


def month_bounds(month: str) -> tuple[date, date]:
    """First day of the month and first day of the following month."""
    year, mon = (int(part) for part in month.split("-"))
    start = date(year, mon, 1)
    nyear, nmon = (int(part) for part in next_month(month).split("-"))
    return start, date(nyear, nmon, 1)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountingMode(str, Enum):
    """
    The two mutually exclusive ways a household keeps its books.

    INDIVIDUAL: every shared expense is split into per-member debts.
    SHARED_POOL: income feeds a communal pool plus personal allowances.
    """
    INDIVIDUAL = "individual"
    SHARED_POOL = "shared_pool"


class ExpenseType(str, Enum):
    """Who an expense belongs to."""
    PERSONAL = "personal"
    SHARED = "shared"


class SplitType(str, Enum):
    """How a shared expense is divided between members."""
    EQUAL = "equal"
    RATIO = "ratio"
    CUSTOM = "custom"


class AllowanceType(str, Enum):
    """How a member's personal allowance is carved out of an income."""
    PERCENTAGE = "percentage"  # value in [0, 1], multiplied by the income
    FIXED = "fixed"            # flat amount per income event


class AllowanceOperation(str, Enum):
    SPEND = "spend"
    REFUND = "refund"


# =============================================================================
# INPUT MODELS
# =============================================================================

class CustomSplit(BaseModel):
    """Caller-supplied share of an expense."""

    member_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0, decimal_places=2)


class ExpenseCreate(BaseModel):
    """
    An expense as submitted by a member (or imported from a bank).

    Mode-specific fields are all optional here; the accounting-mode
    policy decides which of them are required.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    date: date
    description: str = Field(..., min_length=1, max_length=500)
    category_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    paid_by_id: str = Field(..., min_length=1)
    type: ExpenseType = ExpenseType.SHARED

    # Individual mode
    split_type: Optional[SplitType] = None
    custom_splits: Optional[list[CustomSplit]] = None

    # Shared-pool mode
    paid_from_pool: bool = False

    # Bank transaction this expense was created from
    transaction_id: Optional[str] = None


class IncomeCreate(BaseModel):
    """An income event for a household member."""
    model_config = ConfigDict(str_strip_whitespace=True)

    household_member_id: str = Field(..., min_length=1)
    date: date
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    type: str = Field(..., min_length=1, max_length=50, description="e.g. salary, bonus")
    description: Optional[str] = Field(default=None, max_length=500)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    allocated_to_month: Optional[MonthStr] = Field(
        default=None,
        description="Book the income against this month instead of its calendar month",
    )
    transaction_id: Optional[str] = None

    @property
    def effective_month(self) -> str:
        return self.allocated_to_month or month_of(self.date)


class AllowanceConfigUpdate(BaseModel):
    """New allowance rule for a member. Applies to future income only."""

    household_member_id: str = Field(..., min_length=1)
    type: AllowanceType
    value: Decimal = Field(..., ge=0)

    @model_validator(mode='after')
    def validate_value_range(self) -> 'AllowanceConfigUpdate':
        if self.type == AllowanceType.PERCENTAGE and self.value > 1:
            raise ValueError("Percentage value must be between 0 and 1")
        return self


class AllowanceAdjustment(BaseModel):
    """Spend from (or refund to) a member's allowance for one month."""

    household_member_id: str = Field(..., min_length=1)
    month: MonthStr
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    operation: AllowanceOperation


# =============================================================================
# SPLIT MODELS
# =============================================================================

class SplitParticipant(BaseModel):
    """A member taking part in a split, with the ratio used for RATIO splits."""

    member_id: str
    ratio: Decimal = Field(default=Decimal("0.5"), ge=0, le=1)


class SplitShare(BaseModel):
    """One computed share of an expense."""

    member_id: str
    amount: Decimal
    paid: bool


# =============================================================================
# OUTPUT MODELS
# =============================================================================

class ExpenseSplitRecord(BaseModel):
    id: str
    household_member_id: str
    member_name: Optional[str] = None
    amount: Decimal
    paid: bool


class ReimbursementRecord(BaseModel):
    """A debt the household owes a member who paid a shared expense."""

    id: str
    expense_id: Optional[str] = None
    household_member_id: str
    member_name: Optional[str] = None
    month: str
    amount: Decimal
    description: str
    settled: bool
    settled_at: Optional[datetime] = None
    created_at: datetime


class ExpenseRecord(BaseModel):
    """An expense joined with its category, payer, splits and reimbursement."""

    id: str
    household_id: str
    date: date
    description: str
    category_id: str
    category_name: Optional[str] = None
    amount: Decimal
    currency: str
    paid_by_id: str
    paid_by_name: Optional[str] = None
    type: ExpenseType
    paid: bool
    paid_from_pool: bool
    needs_reimbursement: bool
    splits: list[ExpenseSplitRecord] = Field(default_factory=list)
    reimbursement: Optional[ReimbursementRecord] = None
    mode: AccountingMode
    created_at: datetime

    @property
    def split_total(self) -> Decimal:
        return sum((s.amount for s in self.splits), Decimal("0"))


class IncomeRecord(BaseModel):
    id: str
    household_member_id: str
    date: date
    description: str
    amount: Decimal
    currency: str
    type: str
    allocated_to_month: Optional[str] = None

    @property
    def effective_month(self) -> str:
        return self.allocated_to_month or month_of(self.date)


class AllowanceRecord(BaseModel):
    """
    A member's personal allowance for one month.

    remaining == allocated - spent always holds. remaining may be
    negative (overspend is meaningful, not an error).
    """

    household_member_id: str
    member_name: Optional[str] = None
    month: str
    allocated: Decimal
    spent: Decimal
    remaining: Decimal
    carried_to: Decimal


class AllowanceConfigRecord(BaseModel):
    household_member_id: str
    type: AllowanceType
    value: Decimal
    is_active: bool


class IncomeAllocation(BaseModel):
    """How one income event was divided between allowance and pool."""

    household_member_id: str
    month: str
    amount: Decimal
    allocated_to_allowance: Decimal
    contributed_to_pool: Decimal
    pool_balance: Decimal
    allowance: AllowanceRecord


class IncomeResult(BaseModel):
    income: IncomeRecord
    allocation: Optional[IncomeAllocation] = None
    mode: AccountingMode


class ReimbursementList(BaseModel):
    items: list[ReimbursementRecord] = Field(default_factory=list)
    total_owed: Decimal = Decimal("0")

    @property
    def count(self) -> int:
        return len(self.items)


class BalanceDetail(BaseModel):
    expense_id: str
    description: str
    amount: Decimal
    date: date
    direction: Literal["owes", "owed"]
    other_member: str


class MemberBalance(BaseModel):
    """What one member owes and is owed under individual accounting."""

    household_member_id: str
    total_owed: Decimal
    total_owing: Decimal
    net_balance: Decimal
    details: list[BalanceDetail] = Field(default_factory=list)


class Counterparty(BaseModel):
    household_member_id: str
    member_name: str
    amount: Decimal


class HouseholdBalance(BaseModel):
    household_member_id: str
    member_name: str
    net_balance: Decimal
    owes: list[Counterparty] = Field(default_factory=list)
    owed_by: list[Counterparty] = Field(default_factory=list)


class PoolSummary(BaseModel):
    """Shared-pool overview for one month."""

    month: str
    total_income: Decimal
    total_pool_expenses: Decimal
    total_personal_expenses: Decimal
    amount_to_pool: Decimal
    amount_to_allowances: Decimal
    pool_balance: Decimal
    member_allowances: list[AllowanceRecord] = Field(default_factory=list)
    pending_reimbursements: list[ReimbursementRecord] = Field(default_factory=list)
    total_owed: Decimal


class HouseholdSettingsRecord(BaseModel):
    household_id: str
    accounting_mode: AccountingMode
    default_paid_by_id: Optional[str] = None
    default_type: ExpenseType = ExpenseType.SHARED
    default_split_type: SplitType = SplitType.EQUAL


class ModeSwitchResult(BaseModel):
    household_id: str
    previous_mode: AccountingMode
    mode: AccountingMode
    incomes_replayed: int = 0
    pool_balance: Optional[Decimal] = None


class HouseholdSettingsUpdate(BaseModel):
    """Defaults pre-filled on new expenses. Unset fields are left alone."""

    default_paid_by_id: Optional[str] = None
    default_type: Optional[ExpenseType] = None
    default_split_type: Optional[SplitType] = None
