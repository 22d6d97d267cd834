"""
Audit Logger

DESIGN DECISION: Every state change of the ledger and every decision of
the step-up gate is logged. This provides:
1. Complete traceability of money movements
2. Debugging capability
3. Household members can see the history of their books
4. A record of which session authorized which bank operation

The audit logger:
- Is async to not block main flow
- Gracefully handles sink failures (a failed audit write never fails a
  committed ledger operation)
- Supports correlation IDs to trace related events
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from monterico.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from monterico.storage.interface import AuditStorageInterface, StorageError


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def get_logger(name: Optional[str] = None):
    """Structured logger for modules that log outside the audit trail."""
    return structlog.get_logger(name)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. The configured audit sink (Google Sheets in production)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("monterico.audit")

    @property
    def storage(self) -> Optional[AuditStorageInterface]:
        return self._storage

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except StorageError as e:
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_all(self, events: list[AuditEvent]) -> None:
        for event in events:
            await self.log(event)

    async def log_mode_switched(
        self,
        household_id: str,
        previous_mode: str,
        mode: str,
        incomes_replayed: int,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.mode_switched(
            household_id=household_id,
            previous_mode=previous_mode,
            mode=mode,
            incomes_replayed=incomes_replayed,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_replay_failed(
        self,
        household_id: str,
        income_id: Optional[str],
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.replay_failed(
            household_id=household_id,
            income_id=income_id,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_bank_mfa_denied(self, user_id: str, code: str) -> None:
        """Log a bank operation refused by the step-up gate."""
        await self.log(AuditEventBuilder.bank_mfa_denied(user_id, code))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a multi-step operation (e.g., a mode switch).
    Pass it through all subsequent operations.
    """
    return uuid4()
