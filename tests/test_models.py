"""
Tests for the Expense Chat Gateway data models

Test strategy:
1. Unit tests for the Pydantic models at each boundary
2. No database, no model calls
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from expense_gateway.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from expense_gateway.models.chat import (
    CategoryResolutionState,
    ChatRequest,
    ChatResponse,
    ConversationContext,
    EntityRef,
    OutcomeStatus,
    PendingExpense,
    StatementOutcome,
)
from expense_gateway.models.entities import Book, Category, UserCatalog
from expense_gateway.models.statements import (
    BoolGroup,
    ColumnRef,
    Comparison,
    Entity,
    LiteralKind,
    SqlLiteral,
    StatementKind,
    iter_comparisons,
)


class TestEntityModels:
    """Tests for books, categories and the request catalog."""

    def test_book_strips_whitespace(self):
        """Test that whitespace is stripped from book names."""
        book = Book(id="b1", user_id="u1", name="  House  ", currency="USD")
        assert book.name == "House"

    def test_book_rejects_bad_currency_length(self):
        """Test currency codes must have three letters."""
        with pytest.raises(ValueError):
            Book(id="b1", user_id="u1", name="House", currency="US")

    def test_template_category(self):
        """Test a default category without a book is a template."""
        template = Category(id="c1", name="Food", is_default=True)
        owned = Category(id="c2", book_id="b1", name="Food", is_default=True)
        assert template.is_template
        assert not owned.is_template

    def test_catalog_lookups_are_case_insensitive(self, catalog, ids):
        """Test name lookups ignore case and surrounding spaces."""
        assert [b.id for b in catalog.books_named(" house ")] == [ids.house]
        assert catalog.find_category(ids.house, "GROCERIES").id == ids.groceries
        assert catalog.find_category(ids.travel, "groceries") is None

    def test_catalog_book_for_category(self, catalog, ids):
        """Test resolving a category to its book."""
        assert catalog.book_for_category(ids.hotels).name == "Travel"
        assert catalog.book_for_category("missing") is None
        assert catalog.book_names() == ["House", "Travel"]


class TestStatementModels:
    """Tests for the statement IR."""

    def test_literal_constructors(self):
        """Test literal helpers keep source text."""
        assert SqlLiteral.number("40.10").value == "40.10"
        assert SqlLiteral.boolean(False).value == "false"
        assert SqlLiteral.function("curdate").value == "CURDATE"
        assert SqlLiteral.function("now").is_function
        assert SqlLiteral.null().kind == LiteralKind.NULL

    def test_literals_are_frozen(self):
        """Test IR nodes cannot be mutated after parsing."""
        literal = SqlLiteral.string("x")
        with pytest.raises(ValueError):
            literal.value = "y"

    def test_entity_singular(self):
        assert Entity.CATEGORIES.singular == "category"
        assert Entity.EXPENSES.singular == "expense"

    def test_iter_comparisons_is_depth_first(self):
        """Test nested boolean groups are flattened in order."""
        a = Comparison(column=ColumnRef(table=Entity.BOOKS, column="name"), operator="=",
                       values=(SqlLiteral.string("House"),))
        b = Comparison(column=ColumnRef(table=Entity.EXPENSES, column="amount"), operator=">",
                       values=(SqlLiteral.number(5),))
        c = Comparison(column=ColumnRef(table=Entity.EXPENSES, column="amount"), operator="<",
                       values=(SqlLiteral.number(50),))
        tree = BoolGroup(operator="AND", items=(a, BoolGroup(operator="OR", items=(b, c))))
        assert list(iter_comparisons(tree)) == [a, b, c]
        assert list(iter_comparisons(None)) == []

    def test_bool_group_operator_is_restricted(self):
        with pytest.raises(ValueError):
            BoolGroup(operator="XOR", items=())


class TestChatModels:
    """Tests for the chat request/response boundary."""

    def test_request_accepts_camel_case(self):
        """Test the UI's camelCase field names are accepted."""
        request = ChatRequest.model_validate({
            "userId": "u1",
            "message": "show my books",
            "conversationHistory": [{"role": "user", "content": "hi"}],
        })
        assert request.user_id == "u1"
        assert len(request.conversation_history) == 1
        assert request.context.state == CategoryResolutionState.RESOLVING

    def test_request_requires_user_and_message(self):
        with pytest.raises(ValueError):
            ChatRequest(user_id="", message="hello")
        with pytest.raises(ValueError):
            ChatRequest(user_id="u1", message="")

    def test_context_round_trips_by_alias(self):
        """Test the context survives the trip through the UI unchanged."""
        context = ConversationContext(
            last_book=EntityRef(id="b1", name="House"),
            pending_expense=PendingExpense(
                amount=Decimal("40"),
                book_id="b1",
                book_name="House",
                category_name="Bills & Utilities",
            ),
            state=CategoryResolutionState.AWAITING_CONFIRMATION,
        )
        payload = context.model_dump(by_alias=True, mode="json")
        assert "pendingExpense" in payload
        assert ConversationContext.model_validate(payload) == context

    def test_pending_expense_rejects_negative_amount(self):
        with pytest.raises(ValueError):
            PendingExpense(amount=Decimal("-1"), book_id="b1", book_name="House", category_name="X")

    def test_outcome_succeeded(self):
        ok = StatementOutcome(index=0, kind=StatementKind.SELECT, status=OutcomeStatus.SUCCESS)
        refused = StatementOutcome(index=1, kind=StatementKind.INSERT, status=OutcomeStatus.REJECTED)
        assert ok.succeeded
        assert not refused.succeeded

    def test_response_serializes_camel_case(self):
        response = ChatResponse(response="hi", requires_confirmation=True)
        assert response.model_dump(by_alias=True)["requiresConfirmation"] is True


class TestAuditModels:
    """Tests for audit-related models."""

    def test_audit_event_creation(self):
        """Test AuditEvent model creation."""
        event = AuditEvent(
            event_type=AuditEventType.CHAT_RECEIVED,
            user_id="u1",
            description="Test event",
        )
        assert event.severity == AuditSeverity.INFO
        assert event.event_id is not None

    def test_builder_security_violation(self):
        """Test security violations are errors with a code."""
        correlation_id = uuid4()
        event = AuditEventBuilder.security_violation(
            user_id="u1",
            statement="DROP TABLE books",
            reason="Keyword 'DROP' is not allowed",
            correlation_id=correlation_id,
        )
        assert event.event_type == AuditEventType.SECURITY_VIOLATION
        assert event.severity == AuditSeverity.ERROR
        assert event.error_code == "security_violation"
        assert event.correlation_id == correlation_id

    def test_builder_truncates_long_statements(self):
        event = AuditEventBuilder.validation_failed(
            user_id="u1",
            statement="SELECT " + "x" * 500,
            field="amount",
            reason="bad",
            correlation_id=uuid4(),
        )
        assert len(event.details["statement"]) <= 203
        assert event.severity == AuditSeverity.WARNING

    def test_confirmation_leak_is_critical(self):
        event = AuditEventBuilder.confirmation_leak(user_id="u1", phrase="Done!", correlation_id=None)
        assert event.severity == AuditSeverity.CRITICAL

    def test_to_log_dict(self):
        """Test conversion to log dictionary."""
        correlation_id = uuid4()
        event = AuditEventBuilder.statement_executed(
            user_id="u1",
            index=0,
            kind="insert",
            table="expenses",
            row_count=1,
            correlation_id=correlation_id,
        )
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "statement_executed"
        assert log_dict["correlation_id"] == str(correlation_id)
        assert isinstance(log_dict["timestamp"], str)
