"""
Audit Logger

DESIGN DECISION: Every gateway step of a chat turn is logged.
This provides:
1. Traceability from utterance to executed statement
2. A record of every statement the gateway refused, and why
3. Detection of gateway bugs (confirmation leaks) without showing them to users

The audit logger:
- Is async so callers can await it inline in the pipeline
- Never raises: a logging failure must not fail a chat turn
- Supports correlation IDs to tie one chat turn together
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from expense_gateway.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity


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
    Central audit logging service for the chat gateway.

    Keeps the last events in memory (bounded) so a running session and the
    tests can inspect what was recorded.
    """

    def __init__(self, history_size: int = 200):
        self._logger = structlog.get_logger("expense_gateway.audit")
        self._history_size = history_size
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        """Most recent events, oldest first."""
        return list(self._events)

    async def log(self, event: AuditEvent) -> None:
        """Log an audit event locally at a level matching its severity."""
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        self._events.append(event)
        if len(self._events) > self._history_size:
            del self._events[: len(self._events) - self._history_size]

    async def log_chat_received(
        self,
        user_id: str,
        message: str,
        correlation_id: UUID,
    ) -> None:
        """Log an inbound chat message."""
        await self.log(AuditEventBuilder.chat_received(
            user_id=user_id,
            message=message,
            correlation_id=correlation_id,
        ))

    async def log_statement_extracted(
        self,
        user_id: str,
        count: int,
        model_name: Optional[str],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.statement_extracted(
            user_id=user_id,
            count=count,
            model_name=model_name,
            correlation_id=correlation_id,
        ))

    async def log_security_violation(
        self,
        user_id: str,
        statement: str,
        reason: str,
        correlation_id: UUID,
    ) -> None:
        """Log a statement that failed lexical screening."""
        await self.log(AuditEventBuilder.security_violation(
            user_id=user_id,
            statement=statement,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_validation_failed(
        self,
        user_id: str,
        statement: str,
        field: Optional[str],
        reason: str,
        correlation_id: UUID,
        error_code: str = "validation_error",
    ) -> None:
        """Log a statement refused by the parser or validator."""
        await self.log(AuditEventBuilder.validation_failed(
            user_id=user_id,
            statement=statement,
            field=field,
            reason=reason,
            correlation_id=correlation_id,
            error_code=error_code,
        ))

    async def log_duplicate_rejected(
        self,
        user_id: str,
        entity: str,
        name: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.duplicate_rejected(
            user_id=user_id,
            entity=entity,
            name=name,
            correlation_id=correlation_id,
        ))

    async def log_statement_executed(
        self,
        user_id: str,
        index: int,
        kind: str,
        table: Optional[str],
        row_count: int,
        correlation_id: UUID,
    ) -> None:
        """Log a statement the store accepted."""
        await self.log(AuditEventBuilder.statement_executed(
            user_id=user_id,
            index=index,
            kind=kind,
            table=table,
            row_count=row_count,
            correlation_id=correlation_id,
        ))

    async def log_execution_failed(
        self,
        user_id: str,
        index: int,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log a statement the store rejected."""
        await self.log(AuditEventBuilder.execution_failed(
            user_id=user_id,
            index=index,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_currency_converted(
        self,
        user_id: Optional[str],
        original: str,
        source: str,
        converted: str,
        target: str,
        rate: str,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.currency_converted(
            user_id=user_id,
            original=original,
            source=source,
            converted=converted,
            target=target,
            rate=rate,
            correlation_id=correlation_id,
        ))

    async def log_currency_conversion_failed(
        self,
        user_id: Optional[str],
        source: str,
        target: str,
        error_message: str,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.currency_conversion_failed(
            user_id=user_id,
            source=source,
            target=target,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_llm_fallback_used(
        self,
        user_id: str,
        primary_model: str,
        fallback_model: str,
        correlation_id: UUID,
    ) -> None:
        """Log a switch to the fallback model after rate limiting."""
        await self.log(AuditEventBuilder.llm_fallback_used(
            user_id=user_id,
            primary_model=primary_model,
            fallback_model=fallback_model,
            correlation_id=correlation_id,
        ))

    async def log_upstream_unavailable(
        self,
        user_id: str,
        service: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.upstream_unavailable(
            user_id=user_id,
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_confirmation_leak(
        self,
        user_id: Optional[str],
        phrase: str,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(AuditEventBuilder.confirmation_leak(
            user_id=user_id,
            phrase=phrase,
            correlation_id=correlation_id,
        ))

    async def log_pending_expense_changed(
        self,
        user_id: str,
        previous_state: str,
        new_state: str,
        category_name: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log a category-resolution state transition."""
        await self.log(AuditEventBuilder.pending_expense_changed(
            user_id=user_id,
            previous_state=previous_state,
            new_state=new_state,
            category_name=category_name,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a chat turn and pass it through every stage.
    """
    return uuid4()
