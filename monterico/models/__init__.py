"""
Data Models Package

This package contains all Pydantic models used by Monterico.
All data flowing in and out of the accounting engines, the
authorization gate and the bank sync must conform to these schemas.
"""

from monterico.models.ledger import (
    AccountingMode,
    AllowanceAdjustment,
    AllowanceConfigRecord,
    AllowanceConfigUpdate,
    AllowanceOperation,
    AllowanceRecord,
    AllowanceType,
    BalanceDetail,
    Counterparty,
    CustomSplit,
    ExpenseCreate,
    ExpenseRecord,
    ExpenseSplitRecord,
    ExpenseType,
    HouseholdBalance,
    HouseholdSettingsRecord,
    HouseholdSettingsUpdate,
    IncomeAllocation,
    IncomeCreate,
    IncomeRecord,
    IncomeResult,
    MemberBalance,
    ModeSwitchResult,
    PoolSummary,
    ReimbursementList,
    ReimbursementRecord,
    SplitParticipant,
    SplitShare,
    SplitType,
)
from monterico.models.auth import (
    BankMfaStatus,
    CeremonyOptions,
    CeremonyStart,
    IssuedSession,
    MFAMethodRecord,
    PasskeyUser,
    SessionClaims,
    StoredCredential,
    VerifiedAuthentication,
    VerifiedRegistration,
)
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
from monterico.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "AccountingMode",
    "AllowanceAdjustment",
    "AllowanceConfigRecord",
    "AllowanceConfigUpdate",
    "AllowanceOperation",
    "AllowanceRecord",
    "AllowanceType",
    "BalanceDetail",
    "Counterparty",
    "CustomSplit",
    "ExpenseCreate",
    "ExpenseRecord",
    "ExpenseSplitRecord",
    "ExpenseType",
    "HouseholdBalance",
    "HouseholdSettingsRecord",
    "HouseholdSettingsUpdate",
    "IncomeAllocation",
    "IncomeCreate",
    "IncomeRecord",
    "IncomeResult",
    "MemberBalance",
    "ModeSwitchResult",
    "PoolSummary",
    "ReimbursementList",
    "ReimbursementRecord",
    "SplitParticipant",
    "SplitShare",
    "SplitType",
    # Auth models
    "BankMfaStatus",
    "CeremonyOptions",
    "CeremonyStart",
    "IssuedSession",
    "MFAMethodRecord",
    "PasskeyUser",
    "SessionClaims",
    "StoredCredential",
    "VerifiedAuthentication",
    "VerifiedRegistration",
    # Bank models
    "AccountBalance",
    "AuthorizationStart",
    "BankConnectionRecord",
    "BankTransactionData",
    "StoredTransaction",
    "Institution",
    "SyncResult",
    "TransactionPage",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
