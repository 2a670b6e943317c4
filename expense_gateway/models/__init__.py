"""
Data Models Package

This package contains all Pydantic models used by the Expense Chat Gateway.
All data flowing through the pipeline must conform to these schemas.
"""

from expense_gateway.models.entities import (
    Book,
    Category,
    ChatRole,
    ConversationTurn,
    UserCatalog,
)
from expense_gateway.models.statements import (
    Assignment,
    BoolGroup,
    ColumnRef,
    Comparison,
    Entity,
    InsertStatement,
    Join,
    LiteralKind,
    OrderItem,
    Projection,
    SelectStatement,
    SqlLiteral,
    Statement,
    StatementKind,
    UnsupportedStatement,
    UpdateStatement,
)
from expense_gateway.models.chat import (
    CategoryResolutionState,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ConversationContext,
    EntityRef,
    OutcomeStatus,
    PendingExpense,
    StatementOutcome,
)
from expense_gateway.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Entities
    "Book",
    "Category",
    "ChatRole",
    "ConversationTurn",
    "UserCatalog",
    # Statement IR
    "Assignment",
    "BoolGroup",
    "ColumnRef",
    "Comparison",
    "Entity",
    "InsertStatement",
    "Join",
    "LiteralKind",
    "OrderItem",
    "Projection",
    "SelectStatement",
    "SqlLiteral",
    "Statement",
    "StatementKind",
    "UnsupportedStatement",
    "UpdateStatement",
    # Chat boundary
    "CategoryResolutionState",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ConversationContext",
    "EntityRef",
    "OutcomeStatus",
    "PendingExpense",
    "StatementOutcome",
    # Audit
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
