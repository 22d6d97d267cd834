"""
Relational Schema for Monterico

One household per user: household_id is the owning user's id, so every
household-scoped table carries user_id.

DESIGN DECISION: The shared pool and the household settings are keyed by
household_id (primary key), never looked up as "the first row". Two
concurrent get-or-create calls for the same household therefore collide on
the key instead of silently creating two rows.

Money columns are Numeric(12, 2). Balances (pool, allowances) are only ever
changed with relative UPDATE statements, see monterico.storage.repository.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


Money = Numeric(12, 2)


class Base(DeclarativeBase):
    pass


# =============================================================================
# USERS & HOUSEHOLD
# =============================================================================

class UserRow(Base):
    __tablename__ = "users"

    __table_args__ = (
        UniqueConstraint("email", name="uq_user_email"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(100))
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    mfa_setup_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    mfa_required: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class HouseholdMemberRow(Base):
    __tablename__ = "household_members"

    __table_args__ = (
        Index("idx_members_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Weight for ratio splits
    split_ratio: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("0.5"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class CategoryRow(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class HouseholdSettingsRow(Base):
    __tablename__ = "household_settings"

    household_id: Mapped[str] = mapped_column(ForeignKey("users.id"), primary_key=True)
    accounting_mode: Mapped[str] = mapped_column(String(20), default="individual")
    default_paid_by_id: Mapped[Optional[str]] = mapped_column(ForeignKey("household_members.id"))
    default_type: Mapped[str] = mapped_column(String(20), default="shared")
    default_split_type: Mapped[str] = mapped_column(String(20), default="equal")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


# =============================================================================
# EXPENSES
# =============================================================================

class ExpenseRow(Base):
    __tablename__ = "expenses"

    __table_args__ = (
        Index("idx_expenses_user_date", "user_id", "date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    category_id: Mapped[str] = mapped_column(ForeignKey("categories.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    paid_by_id: Mapped[str] = mapped_column(ForeignKey("household_members.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_from_pool: Mapped[bool] = mapped_column(Boolean, default=False)
    needs_reimbursement: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ExpenseSplitRow(Base):
    __tablename__ = "expense_splits"

    __table_args__ = (
        UniqueConstraint("expense_id", "household_member_id", name="uq_split_member"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    expense_id: Mapped[str] = mapped_column(
        ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False
    )
    household_member_id: Mapped[str] = mapped_column(
        ForeignKey("household_members.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    paid: Mapped[bool] = mapped_column(Boolean, default=False)


# =============================================================================
# INCOME, ALLOWANCES, POOL
# =============================================================================

class IncomeRow(Base):
    __tablename__ = "incomes"

    __table_args__ = (
        Index("idx_incomes_user_date", "user_id", "date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    household_member_id: Mapped[str] = mapped_column(
        ForeignKey("household_members.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), default="")
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    allocated_to_month: Mapped[Optional[str]] = mapped_column(String(7))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class AllowanceConfigRow(Base):
    __tablename__ = "allowance_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    household_member_id: Mapped[str] = mapped_column(
        ForeignKey("household_members.id"), unique=True, nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class PersonalAllowanceRow(Base):
    __tablename__ = "personal_allowances"

    __table_args__ = (
        UniqueConstraint("household_member_id", "month", name="uq_allowance_member_month"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    household_member_id: Mapped[str] = mapped_column(
        ForeignKey("household_members.id"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    allocated: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    spent: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    remaining: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    carried_to: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))


class SharedPoolRow(Base):
    __tablename__ = "shared_pools"

    household_id: Mapped[str] = mapped_column(ForeignKey("users.id"), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class ReimbursementRow(Base):
    __tablename__ = "reimbursements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    expense_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("expenses.id", ondelete="CASCADE"), unique=True
    )
    household_member_id: Mapped[str] = mapped_column(
        ForeignKey("household_members.id"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    settled: Mapped[bool] = mapped_column(Boolean, default=False)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# =============================================================================
# MFA
# =============================================================================

class MFAMethodRow(Base):
    __tablename__ = "mfa_methods"

    __table_args__ = (
        UniqueConstraint("credential_id", name="uq_mfa_credential"),
        Index("idx_mfa_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default="passkey")
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    credential_id: Mapped[str] = mapped_column(Text, nullable=False)
    public_key: Mapped[str] = mapped_column(Text, nullable=False)
    counter: Mapped[int] = mapped_column(default=0)
    transports: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


# =============================================================================
# BANK DATA
# =============================================================================

class BankConnectionRow(Base):
    __tablename__ = "bank_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    institution_name: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class BankAccountRow(Base):
    __tablename__ = "bank_accounts"

    __table_args__ = (
        UniqueConstraint("connection_id", "account_id", name="uq_bank_account"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    connection_id: Mapped[str] = mapped_column(
        ForeignKey("bank_connections.id"), nullable=False
    )
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))


class BankTransactionRow(Base):
    __tablename__ = "bank_transactions"

    __table_args__ = (
        UniqueConstraint("transaction_id", "account_id", name="uq_bank_transaction"),
        Index("idx_bank_tx_connection", "connection_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    # NULL once the connection is removed; only linked transactions outlive it
    connection_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("bank_connections.id", ondelete="SET NULL")
    )
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(String(500), default="Unknown")
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    category: Mapped[Optional[str]] = mapped_column(String(100))
    pending: Mapped[bool] = mapped_column(Boolean, default=False)
    merchant_name: Mapped[Optional[str]] = mapped_column(String(255))
    linked_to_expense: Mapped[bool] = mapped_column(Boolean, default=False)
    expense_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("expenses.id", ondelete="SET NULL")
    )
    linked_to_income: Mapped[bool] = mapped_column(Boolean, default=False)
    income_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("incomes.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
