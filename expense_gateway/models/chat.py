"""
Chat Boundary Models

The chat endpoint accepts a ChatRequest and returns a ChatResponse.
Both carry the ConversationContext so that follow-up utterances can be
resolved without the gateway holding any state between requests.

DESIGN DECISION: The context travels with the request. The UI stores
whatever context the last response returned and sends it back unchanged.
The gateway never re-scans the transcript to infer it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from expense_gateway.models.entities import ChatRole
from expense_gateway.models.statements import Entity, Statement, StatementKind


# =============================================================================
# ENUMS
# =============================================================================

class OutcomeStatus(str, Enum):
    """Per-statement result of one chat turn."""
    SUCCESS = "success"
    REJECTED = "rejected"    # screener / validator refused it
    FAILED = "failed"        # the store refused it


class CategoryResolutionState(str, Enum):
    """
    Per expense-creation attempt.

    RESOLVING -> READY | NEEDS_CATEGORY
    NEEDS_CATEGORY -> AWAITING_CONFIRMATION
    AWAITING_CONFIRMATION -> READY
    any -> ABANDONED
    """
    RESOLVING = "resolving"
    READY = "ready"
    NEEDS_CATEGORY = "needs_category"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    ABANDONED = "abandoned"


# =============================================================================
# CONVERSATION CONTEXT
# =============================================================================

class EntityRef(BaseModel):
    """A remembered book or category."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class PendingExpense(BaseModel):
    """
    An expense whose fields are known but whose insert is deferred
    because its category does not exist yet in the target book.
    """
    model_config = ConfigDict(frozen=True)

    amount: Decimal = Field(..., ge=0)
    description: str = ""
    date: Optional[str] = None
    payment_method: Optional[str] = None
    book_id: str
    book_name: str
    category_name: str = Field(..., min_length=1)
    category_id: Optional[str] = Field(
        default=None,
        description="Filled in once the missing category has been created"
    )
    utterance: str = Field(
        default="",
        description="The user message that asked for the expense, for currency detection"
    )


class ConversationContext(BaseModel):
    """Bounded, explicit multi-turn state."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    last_book: Optional[EntityRef] = Field(default=None, alias="lastBook")
    last_category: Optional[EntityRef] = Field(default=None, alias="lastCategory")
    pending_expense: Optional[PendingExpense] = Field(default=None, alias="pendingExpense")
    state: CategoryResolutionState = CategoryResolutionState.RESOLVING


# =============================================================================
# REQUEST / RESPONSE
# =============================================================================

class ChatMessage(BaseModel):
    """One role-tagged message as the UI sends it."""
    role: ChatRole
    content: str


class StatementOutcome(BaseModel):
    """What happened to one extracted statement."""

    index: int = Field(..., ge=0, description="Position in the model's reply")
    kind: StatementKind
    table: Optional[Entity] = None
    status: OutcomeStatus
    row_count: int = 0
    rows: list[dict[str, Any]] = Field(default_factory=list)
    message: str = ""
    error_type: Optional[str] = None
    inserted_id: Optional[str] = None
    statement: Optional[Statement] = Field(
        default=None,
        description="The rewritten statement that was executed (writes only)"
    )

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


class ChatRequest(BaseModel):
    """Inbound chat turn."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", min_length=1)
    message: str = Field(..., min_length=1)
    conversation_history: list[ChatMessage] = Field(
        default_factory=list,
        alias="conversationHistory"
    )
    context: ConversationContext = Field(default_factory=ConversationContext)


class ChatResponse(BaseModel):
    """Outbound chat turn. `response` is always gateway-formatted text."""
    model_config = ConfigDict(populate_by_name=True)

    response: str
    requires_confirmation: bool = Field(default=False, alias="requiresConfirmation")
    context: ConversationContext = Field(default_factory=ConversationContext)
    outcomes: list[StatementOutcome] = Field(default_factory=list)
    advisories: list[str] = Field(default_factory=list)
    model_name: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
