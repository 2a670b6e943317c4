"""
Audit Models for the Expense Chat Gateway

Every gateway step emits an audit event. This provides:
1. Traceability of every statement the model generated
2. A record of every rejected statement and why
3. Debugging information when the upstream model misbehaves

DESIGN DECISION: Audit events are append-only structured log records.
All events of one chat turn share a correlation id.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step in the chat pipeline has its own event type.
    """
    # Inbound
    CHAT_RECEIVED = "chat_received"
    STATEMENT_EXTRACTED = "statement_extracted"

    # Rejections
    SECURITY_VIOLATION = "security_violation"
    VALIDATION_FAILED = "validation_failed"
    DUPLICATE_REJECTED = "duplicate_rejected"

    # Execution
    STATEMENT_EXECUTED = "statement_executed"
    EXECUTION_FAILED = "execution_failed"

    # Currency
    CURRENCY_CONVERTED = "currency_converted"
    CURRENCY_CONVERSION_FAILED = "currency_conversion_failed"

    # Upstream model
    LLM_FALLBACK_USED = "llm_fallback_used"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"

    # Gateway self-checks and context
    CONFIRMATION_LEAK = "confirmation_leak"
    PENDING_EXPENSE_CHANGED = "pending_expense_changed"


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

    # Who and which turn
    user_id: Optional[str] = Field(
        default=None,
        description="Requesting user"
    )
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="Ties together every event of one chat turn"
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

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


def _preview(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.chat_received(user_id, message, correlation_id)
        event = AuditEventBuilder.statement_executed(user_id, 0, "insert", "expenses", 1, correlation_id)
    """

    @staticmethod
    def chat_received(
        user_id: str,
        message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CHAT_RECEIVED,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Chat message received",
            details={"message_preview": _preview(message)},
        )

    @staticmethod
    def statement_extracted(
        user_id: str,
        count: int,
        model_name: Optional[str],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STATEMENT_EXTRACTED,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Extracted {count} statement(s) from model reply",
            details={"count": count, "model_name": model_name},
        )

    @staticmethod
    def security_violation(
        user_id: str,
        statement: str,
        reason: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SECURITY_VIOLATION,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Generated statement failed security screening",
            details={"statement": _preview(statement)},
            error_code="security_violation",
            error_message=reason,
        )

    @staticmethod
    def validation_failed(
        user_id: str,
        statement: str,
        field: Optional[str],
        reason: str,
        correlation_id: UUID,
        error_code: str = "validation_error",
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Statement rejected on field {field or '-'}",
            details={"statement": _preview(statement), "field": field},
            error_code=error_code,
            error_message=reason,
        )

    @staticmethod
    def duplicate_rejected(
        user_id: str,
        entity: str,
        name: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DUPLICATE_REJECTED,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Duplicate {entity} '{name}' not created",
            details={"entity": entity, "name": name},
        )

    @staticmethod
    def statement_executed(
        user_id: str,
        index: int,
        kind: str,
        table: Optional[str],
        row_count: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STATEMENT_EXECUTED,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"{kind.upper()} on {table} affected {row_count} row(s)",
            details={
                "index": index,
                "kind": kind,
                "table": table,
                "row_count": row_count,
            },
        )

    @staticmethod
    def execution_failed(
        user_id: str,
        index: int,
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXECUTION_FAILED,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Store rejected statement #{index + 1}",
            details={"index": index},
            error_message=error_message,
        )

    @staticmethod
    def currency_converted(
        user_id: str,
        original: str,
        source: str,
        converted: str,
        target: str,
        rate: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CURRENCY_CONVERTED,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Converted {original} {source} to {converted} {target}",
            details={
                "original_amount": original,
                "source_currency": source,
                "converted_amount": converted,
                "target_currency": target,
                "rate": rate,
            },
        )

    @staticmethod
    def currency_conversion_failed(
        user_id: str,
        source: str,
        target: str,
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CURRENCY_CONVERSION_FAILED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Could not convert {source} to {target}",
            details={"source_currency": source, "target_currency": target},
            error_message=error_message,
        )

    @staticmethod
    def llm_fallback_used(
        user_id: str,
        primary_model: str,
        fallback_model: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LLM_FALLBACK_USED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Primary model {primary_model} rate limited, used {fallback_model}",
            details={"primary_model": primary_model, "fallback_model": fallback_model},
        )

    @staticmethod
    def upstream_unavailable(
        user_id: str,
        service: str,
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.UPSTREAM_UNAVAILABLE,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"External service unavailable: {service}",
            details={"service": service},
            error_message=error_message,
        )

    @staticmethod
    def confirmation_leak(
        user_id: str,
        phrase: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFIRMATION_LEAK,
            severity=AuditSeverity.CRITICAL,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Model confirmation text reached the formatted response",
            details={"phrase": _preview(phrase)},
            error_code="confirmation_leak",
        )

    @staticmethod
    def pending_expense_changed(
        user_id: str,
        previous_state: str,
        new_state: str,
        category_name: Optional[str],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PENDING_EXPENSE_CHANGED,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Category resolution {previous_state} -> {new_state}",
            details={
                "previous_state": previous_state,
                "new_state": new_state,
                "category_name": category_name,
            },
        )
