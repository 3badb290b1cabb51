"""
Audit Models for the Recurring Transaction Engine

Every unattended change the engine makes to a user's money is logged.
This provides:
1. Complete traceability of every applied, skipped or failed definition
2. Debugging information when a batch item fails
3. A way to explain to the user why a definition was deactivated

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Each step of the auto-apply state machine has its own event type.
    """
    # Auto-apply runs
    AUTO_APPLY_STARTED = "auto_apply_started"
    AUTO_APPLY_COMPLETED = "auto_apply_completed"

    # Per-definition outcomes
    RECURRING_APPLIED = "recurring_applied"
    RECURRING_SKIPPED = "recurring_skipped"
    RECURRING_FAILED = "recurring_failed"
    RECURRING_DEACTIVATED = "recurring_deactivated"
    RECURRING_REACTIVATED = "recurring_reactivated"

    # Manual execution
    MANUAL_EXECUTION_COMPLETED = "manual_execution_completed"
    MANUAL_EXECUTION_FAILED = "manual_execution_failed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
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
    tenant_id: Optional[str] = None
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'recurring', 'run')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - all events of one run share the run id
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events"
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
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.recurring_applied(recurring_id, ...)
        event = AuditEventBuilder.auto_apply_completed(run_id, ...)
    """

    @staticmethod
    def auto_apply_started(
        run_id: UUID,
        tenant_id: str,
        due_count: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.AUTO_APPLY_STARTED,
            tenant_id=tenant_id,
            entity_type="run",
            entity_id=run_id,
            correlation_id=run_id,
            description=f"Auto-apply started with {due_count} due definitions",
            details={"due_count": due_count},
        )

    @staticmethod
    def auto_apply_completed(
        run_id: UUID,
        tenant_id: str,
        applied: int,
        failed: int,
        pending: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.AUTO_APPLY_COMPLETED,
            severity=AuditSeverity.WARNING if failed else AuditSeverity.INFO,
            tenant_id=tenant_id,
            entity_type="run",
            entity_id=run_id,
            correlation_id=run_id,
            description=(
                f"Auto-apply completed: {applied} applied, "
                f"{failed} failed, {pending} pending"
            ),
            details={
                "applied_count": applied,
                "failed_count": failed,
                "pending_count": pending,
            },
        )

    @staticmethod
    def recurring_applied(
        recurring_id: UUID,
        tenant_id: str,
        name: str,
        amount: str,
        transaction_ids: list[UUID],
        next_occurrence: Optional[str],
        correlation_id: Optional[UUID],
        is_user_action: bool = False,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.MANUAL_EXECUTION_COMPLETED
                if is_user_action
                else AuditEventType.RECURRING_APPLIED
            ),
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description=f"Recurring applied: {name} - {amount}",
            details={
                "amount": amount,
                "transaction_ids": [str(t) for t in transaction_ids],
                "next_occurrence_date": next_occurrence,
            },
            is_user_action=is_user_action,
        )

    @staticmethod
    def recurring_skipped(
        recurring_id: UUID,
        tenant_id: str,
        reason: str,
        message: str,
        failed_attempts: int,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_SKIPPED,
            severity=AuditSeverity.WARNING,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description=f"Recurring skipped: {message}",
            details={
                "reason": reason,
                "failed_attempts": failed_attempts,
            },
        )

    @staticmethod
    def recurring_failed(
        recurring_id: UUID,
        tenant_id: str,
        error_type: str,
        error_message: str,
        failed_attempts: int,
        correlation_id: Optional[UUID],
        is_user_action: bool = False,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.MANUAL_EXECUTION_FAILED
                if is_user_action
                else AuditEventType.RECURRING_FAILED
            ),
            severity=AuditSeverity.ERROR,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description=f"Recurring failed: {error_type}",
            error_code=error_type,
            error_message=error_message,
            details={"failed_attempts": failed_attempts},
            is_user_action=is_user_action,
        )

    @staticmethod
    def recurring_deactivated(
        recurring_id: UUID,
        tenant_id: str,
        failed_attempts: int,
        max_failed_attempts: int,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_DEACTIVATED,
            severity=AuditSeverity.WARNING,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            correlation_id=correlation_id,
            description=(
                f"Recurring deactivated after {failed_attempts}/"
                f"{max_failed_attempts} failed attempts"
            ),
            details={
                "failed_attempts": failed_attempts,
                "max_failed_attempts": max_failed_attempts,
            },
        )

    @staticmethod
    def recurring_reactivated(
        recurring_id: UUID,
        tenant_id: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_REACTIVATED,
            tenant_id=tenant_id,
            entity_type="recurring",
            entity_id=recurring_id,
            description="Recurring re-enabled by user",
            is_user_action=True,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_code=error_type,
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
