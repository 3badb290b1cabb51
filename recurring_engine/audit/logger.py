"""
Audit Logger

DESIGN DECISION: Every change the engine makes without the user
watching is logged. This provides:
1. Complete traceability of unattended money movements
2. Debugging capability for failed batch items
3. An explanation when a definition gets deactivated

The audit logger:
- Is async to not block the run
- Gracefully handles failures (a broken audit store never fails a run)
- Uses the run id as correlation id so one run's events can be grouped
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from recurring_engine.models.audit import AuditEvent, AuditEventBuilder
from recurring_engine.services.storage import AuditStorageInterface


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


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage, when configured (for persistence)
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
        self._logger = structlog.get_logger("recurring_engine.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_run_started(
        self,
        run_id: UUID,
        tenant_id: str,
        due_count: int,
    ) -> None:
        """Log the start of an auto-apply run."""
        await self.log(AuditEventBuilder.auto_apply_started(
            run_id=run_id,
            tenant_id=tenant_id,
            due_count=due_count,
        ))

    async def log_run_completed(
        self,
        run_id: UUID,
        tenant_id: str,
        applied: int,
        failed: int,
        pending: int,
    ) -> None:
        """Log the end of an auto-apply run."""
        await self.log(AuditEventBuilder.auto_apply_completed(
            run_id=run_id,
            tenant_id=tenant_id,
            applied=applied,
            failed=failed,
            pending=pending,
        ))

    async def log_applied(
        self,
        recurring_id: UUID,
        tenant_id: str,
        name: str,
        amount: str,
        transaction_ids: list[UUID],
        next_occurrence: Optional[str],
        correlation_id: Optional[UUID],
        is_user_action: bool = False,
    ) -> None:
        """Log a successful application."""
        await self.log(AuditEventBuilder.recurring_applied(
            recurring_id=recurring_id,
            tenant_id=tenant_id,
            name=name,
            amount=amount,
            transaction_ids=transaction_ids,
            next_occurrence=next_occurrence,
            correlation_id=correlation_id,
            is_user_action=is_user_action,
        ))

    async def log_skipped(
        self,
        recurring_id: UUID,
        tenant_id: str,
        reason: str,
        message: str,
        failed_attempts: int,
        correlation_id: Optional[UUID],
    ) -> None:
        """Log a skipped definition."""
        await self.log(AuditEventBuilder.recurring_skipped(
            recurring_id=recurring_id,
            tenant_id=tenant_id,
            reason=reason,
            message=message,
            failed_attempts=failed_attempts,
            correlation_id=correlation_id,
        ))

    async def log_failed(
        self,
        recurring_id: UUID,
        tenant_id: str,
        error_type: str,
        error_message: str,
        failed_attempts: int,
        correlation_id: Optional[UUID],
        is_user_action: bool = False,
    ) -> None:
        """Log a failed definition."""
        await self.log(AuditEventBuilder.recurring_failed(
            recurring_id=recurring_id,
            tenant_id=tenant_id,
            error_type=error_type,
            error_message=error_message,
            failed_attempts=failed_attempts,
            correlation_id=correlation_id,
            is_user_action=is_user_action,
        ))

    async def log_deactivated(
        self,
        recurring_id: UUID,
        tenant_id: str,
        failed_attempts: int,
        max_failed_attempts: int,
        correlation_id: Optional[UUID],
    ) -> None:
        """Log a deactivation caused by repeated failures."""
        await self.log(AuditEventBuilder.recurring_deactivated(
            recurring_id=recurring_id,
            tenant_id=tenant_id,
            failed_attempts=failed_attempts,
            max_failed_attempts=max_failed_attempts,
            correlation_id=correlation_id,
        ))

    async def log_reactivated(
        self,
        recurring_id: UUID,
        tenant_id: str,
    ) -> None:
        """Log a user re-enabling a definition."""
        await self.log(AuditEventBuilder.recurring_reactivated(
            recurring_id=recurring_id,
            tenant_id=tenant_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a run or a manual execution.
    """
    return uuid4()
