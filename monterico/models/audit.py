"""
Audit Models for Monterico

Every money movement and every authorization decision is logged for
audit purposes. This provides:
1. Complete traceability of pool and allowance changes
2. Debugging information when things go wrong
3. A record of who authorized which bank operation
4. Ability to reconstruct history

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every state transition of the ledger and of the step-up gate
    has its own event type.
    """
    # Expenses
    EXPENSE_RECORDED = "expense_recorded"
    EXPENSE_DELETED = "expense_deleted"
    SPLITS_CREATED = "splits_created"
    SPLIT_PAID = "split_paid"
    DEBTS_SETTLED = "debts_settled"
    POOL_DEBITED = "pool_debited"

    # Income and allowances
    INCOME_PROCESSED = "income_processed"
    INCOME_DELETED = "income_deleted"
    ALLOWANCE_CONFIGURED = "allowance_configured"
    ALLOWANCE_ADJUSTED = "allowance_adjusted"
    ALLOWANCE_ROLLED_OVER = "allowance_rolled_over"

    # Reimbursements
    REIMBURSEMENT_CREATED = "reimbursement_created"
    REIMBURSEMENT_SETTLED = "reimbursement_settled"

    # Settings
    MODE_SWITCHED = "mode_switched"
    REPLAY_FAILED = "replay_failed"

    # Authentication
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    PASSKEY_REGISTERED = "passkey_registered"
    MFA_VERIFIED = "mfa_verified"
    MFA_VERIFICATION_FAILED = "mfa_verification_failed"
    BANK_STEP_UP_VERIFIED = "bank_step_up_verified"
    BANK_MFA_DENIED = "bank_mfa_denied"
    MFA_METHOD_REMOVED = "mfa_method_removed"

    # Bank data
    TRANSACTIONS_SYNCED = "transactions_synced"
    TRANSACTIONS_IMPORTED = "transactions_imported"
    BANK_CONNECTION_REMOVED = "bank_connection_removed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _jsonable(details: dict[str, Any]) -> dict[str, Any]:
    return {
        key: str(value) if isinstance(value, (Decimal, UUID, datetime)) else value
        for key, value in details.items()
    }


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    household_id: Optional[str] = Field(
        default=None,
        description="Household the event belongs to"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'expense', 'allowance', 'session')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one mode switch)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "household_id": self.household_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": _jsonable(self.details),
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, household_id, entity_type,
         entity_id, correlation_id, description, details_json, error_code,
         error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.household_id or "",
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(_jsonable(self.details)) if self.details else "",
            self.error_code or "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.expense_recorded(household_id, expense_id, ...)
        event = AuditEventBuilder.bank_mfa_denied(user_id, code)
    """

    @staticmethod
    def expense_recorded(
        household_id: str,
        expense_id: str,
        amount: Decimal,
        mode: str,
        expense_type: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_RECORDED,
            household_id=household_id,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=f"{expense_type.capitalize()} expense of {amount} recorded ({mode})",
            details={
                "amount": amount,
                "mode": mode,
                "type": expense_type,
            },
            is_user_action=True,
        )

    @staticmethod
    def expense_deleted(household_id: str, expense_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_DELETED,
            household_id=household_id,
            entity_type="expense",
            entity_id=expense_id,
            description="Expense deleted with its splits and reimbursement",
            is_user_action=True,
        )

    @staticmethod
    def splits_created(
        household_id: str,
        expense_id: str,
        split_type: str,
        shares: list[dict],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SPLITS_CREATED,
            household_id=household_id,
            entity_type="expense",
            entity_id=expense_id,
            description=f"{len(shares)} splits created ({split_type})",
            details={
                "split_type": split_type,
                "shares": [_jsonable(s) for s in shares],
            },
        )

    @staticmethod
    def split_paid(household_id: str, expense_id: str, member_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SPLIT_PAID,
            household_id=household_id,
            entity_type="expense",
            entity_id=expense_id,
            description="Split marked as paid",
            details={"member_id": member_id},
            is_user_action=True,
        )

    @staticmethod
    def debts_settled(
        household_id: str,
        member_a: str,
        member_b: str,
        amount: Decimal,
        splits: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEBTS_SETTLED,
            household_id=household_id,
            entity_type="member",
            entity_id=member_a,
            description=f"Settled {amount} across {splits} splits",
            details={
                "member_a": member_a,
                "member_b": member_b,
                "amount": amount,
                "splits": splits,
            },
            is_user_action=True,
        )

    @staticmethod
    def pool_debited(
        household_id: str,
        expense_id: str,
        amount: Decimal,
        balance: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.POOL_DEBITED,
            household_id=household_id,
            entity_type="shared_pool",
            entity_id=household_id,
            description=f"Pool debited {amount} for expense",
            details={
                "expense_id": expense_id,
                "amount": amount,
                "balance": balance,
            },
        )

    @staticmethod
    def income_processed(
        household_id: str,
        member_id: str,
        month: str,
        amount: Decimal,
        to_allowance: Decimal,
        to_pool: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INCOME_PROCESSED,
            household_id=household_id,
            entity_type="allowance",
            entity_id=f"{member_id}:{month}",
            correlation_id=correlation_id,
            description=f"Income of {amount}: {to_allowance} to allowance, {to_pool} to pool",
            details={
                "member_id": member_id,
                "month": month,
                "amount": amount,
                "to_allowance": to_allowance,
                "to_pool": to_pool,
            },
        )

    @staticmethod
    def income_deleted(household_id: str, income_id: str, amount: Decimal) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INCOME_DELETED,
            household_id=household_id,
            entity_type="income",
            entity_id=income_id,
            description=f"Income of {amount} deleted",
            details={"amount": amount},
            is_user_action=True,
        )

    @staticmethod
    def allowance_configured(
        household_id: str,
        member_id: str,
        config_type: str,
        value: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALLOWANCE_CONFIGURED,
            household_id=household_id,
            entity_type="member",
            entity_id=member_id,
            description=f"Allowance set to {config_type} {value}",
            details={"type": config_type, "value": value},
            is_user_action=True,
        )

    @staticmethod
    def allowance_adjusted(
        household_id: str,
        member_id: str,
        month: str,
        operation: str,
        amount: Decimal,
        remaining: Decimal,
    ) -> AuditEvent:
        severity = AuditSeverity.WARNING if remaining < 0 else AuditSeverity.INFO
        return AuditEvent(
            event_type=AuditEventType.ALLOWANCE_ADJUSTED,
            severity=severity,
            household_id=household_id,
            entity_type="allowance",
            entity_id=f"{member_id}:{month}",
            description=f"Allowance {operation} of {amount}, remaining {remaining}",
            details={
                "operation": operation,
                "amount": amount,
                "remaining": remaining,
            },
            is_user_action=True,
        )

    @staticmethod
    def allowance_rolled_over(
        household_id: str,
        member_id: str,
        month: str,
        carried_to: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALLOWANCE_ROLLED_OVER,
            household_id=household_id,
            entity_type="allowance",
            entity_id=f"{member_id}:{month}",
            description=f"Recorded carry of {carried_to} into next month",
            details={"carried_to": carried_to},
            is_user_action=True,
        )

    @staticmethod
    def reimbursement_created(
        household_id: str,
        reimbursement_id: str,
        expense_id: str,
        member_id: str,
        amount: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REIMBURSEMENT_CREATED,
            household_id=household_id,
            entity_type="reimbursement",
            entity_id=reimbursement_id,
            description=f"Reimbursement of {amount} owed to member",
            details={
                "expense_id": expense_id,
                "member_id": member_id,
                "amount": amount,
            },
        )

    @staticmethod
    def reimbursement_settled(
        household_id: str,
        reimbursement_id: str,
        settled: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REIMBURSEMENT_SETTLED,
            household_id=household_id,
            entity_type="reimbursement",
            entity_id=reimbursement_id,
            description="Reimbursement settled" if settled else "Reimbursement reopened",
            details={"settled": settled},
            is_user_action=True,
        )

    @staticmethod
    def mode_switched(
        household_id: str,
        previous_mode: str,
        mode: str,
        incomes_replayed: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MODE_SWITCHED,
            household_id=household_id,
            entity_type="settings",
            entity_id=household_id,
            correlation_id=correlation_id,
            description=f"Accounting mode switched {previous_mode} -> {mode}",
            details={
                "previous_mode": previous_mode,
                "mode": mode,
                "incomes_replayed": incomes_replayed,
            },
            is_user_action=True,
        )

    @staticmethod
    def replay_failed(
        household_id: str,
        income_id: Optional[str],
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REPLAY_FAILED,
            severity=AuditSeverity.ERROR,
            household_id=household_id,
            entity_type="income",
            entity_id=income_id,
            correlation_id=correlation_id,
            description="Income replay failed, mode switch rolled back",
            error_message=error_message,
        )

    @staticmethod
    def login(user_id: Optional[str], email: str, succeeded: bool) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.LOGIN_SUCCEEDED if succeeded else AuditEventType.LOGIN_FAILED
            ),
            severity=AuditSeverity.INFO if succeeded else AuditSeverity.WARNING,
            household_id=user_id,
            entity_type="session",
            entity_id=user_id,
            description=f"Login {'succeeded' if succeeded else 'failed'} for {email}",
            is_user_action=True,
        )

    @staticmethod
    def passkey_registered(user_id: str, method_id: str, name: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PASSKEY_REGISTERED,
            household_id=user_id,
            entity_type="mfa_method",
            entity_id=method_id,
            description=f"Passkey registered: {name}",
            is_user_action=True,
        )

    @staticmethod
    def mfa_verified(user_id: str, step_up: bool) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.BANK_STEP_UP_VERIFIED if step_up else AuditEventType.MFA_VERIFIED
            ),
            household_id=user_id,
            entity_type="session",
            entity_id=user_id,
            description=(
                "Bank operation step-up verified" if step_up else "Login MFA verified"
            ),
            is_user_action=True,
        )

    @staticmethod
    def mfa_verification_failed(user_id: str, reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MFA_VERIFICATION_FAILED,
            severity=AuditSeverity.WARNING,
            household_id=user_id,
            entity_type="session",
            entity_id=user_id,
            description="Passkey verification failed",
            error_message=reason,
            is_user_action=True,
        )

    @staticmethod
    def bank_mfa_denied(user_id: str, code: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BANK_MFA_DENIED,
            severity=AuditSeverity.WARNING,
            household_id=user_id,
            entity_type="session",
            entity_id=user_id,
            description="Bank operation refused without a valid step-up",
            error_code=code,
        )

    @staticmethod
    def mfa_method_removed(user_id: str, method_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MFA_METHOD_REMOVED,
            household_id=user_id,
            entity_type="mfa_method",
            entity_id=method_id,
            description="MFA method deactivated",
            is_user_action=True,
        )

    @staticmethod
    def transactions_synced(
        household_id: str,
        connection_id: str,
        fetched: int,
        stored: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_SYNCED,
            household_id=household_id,
            entity_type="bank_connection",
            entity_id=connection_id,
            description=f"Bank sync stored {stored} of {fetched} transactions",
            details={"fetched": fetched, "stored": stored},
            is_user_action=True,
        )

    @staticmethod
    def transactions_imported(household_id: str, imported: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_IMPORTED,
            household_id=household_id,
            entity_type="household",
            entity_id=household_id,
            description=f"Imported {imported} bank transactions as expenses",
            details={"imported": imported},
            is_user_action=True,
        )

    @staticmethod
    def bank_connection_removed(
        household_id: str,
        connection_id: str,
        removed: int,
        kept: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BANK_CONNECTION_REMOVED,
            household_id=household_id,
            entity_type="bank_connection",
            entity_id=connection_id,
            description=f"Bank connection removed with {removed} unlinked transactions",
            details={"transactions_removed": removed, "linked_kept": kept},
            is_user_action=True,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
