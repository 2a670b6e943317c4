"""
Conversation Context

The context is explicit and bounded: last book, last category, one
pending expense and the category-resolution state. It arrives with the
request and leaves with the response. Nothing here is stored between
requests.

State machine (per expense-creation attempt):

    RESOLVING -> READY | NEEDS_CATEGORY
    NEEDS_CATEGORY -> AWAITING_CONFIRMATION
    AWAITING_CONFIRMATION -> READY
    any -> ABANDONED
    any -> RESOLVING (a new attempt)

IMPORTANT: A pending expense is only ever completed with a category from
its own book. No category from another book is substituted.
"""

import re
from difflib import SequenceMatcher
from decimal import Decimal
from typing import Optional

from expense_gateway.models.chat import (
    CategoryResolutionState,
    ConversationContext,
    EntityRef,
    PendingExpense,
)
from expense_gateway.models.entities import Book, UserCatalog
from expense_gateway.models.statements import (
    Entity,
    InsertStatement,
    LiteralKind,
    SqlLiteral,
)


State = CategoryResolutionState

ALLOWED_TRANSITIONS: dict[State, frozenset[State]] = {
    State.RESOLVING: frozenset({State.READY, State.NEEDS_CATEGORY}),
    State.NEEDS_CATEGORY: frozenset({State.AWAITING_CONFIRMATION}),
    State.AWAITING_CONFIRMATION: frozenset({State.READY}),
    State.READY: frozenset(),
    State.ABANDONED: frozenset(),
}

PROCEED_PHRASES = (
    "add it now",
    "add it",
    "now add it",
    "add the expense",
    "add the expense now",
    "go ahead",
    "go ahead and add it",
    "proceed",
    "do it",
    "yes add it",
    "ok add it",
    "continue",
)

CONFIRM_PHRASES = (
    "yes",
    "yes please",
    "yeah",
    "yep",
    "sure",
    "ok",
    "okay",
    "create it",
    "yes create it",
    "please create it",
    "go ahead",
    "confirm",
    "do it",
)

DECLINE_PHRASES = (
    "no",
    "no thanks",
    "nope",
    "cancel",
    "never mind",
    "dont",
    "don't create it",
    "stop",
)

MATCH_THRESHOLD = 0.8

_THIS_BOOK = re.compile(r"\b(?:this|that|the same)\s+book\b", re.IGNORECASE)
_THIS_CATEGORY = re.compile(r"\b(?:this|that|the same)\s+category\b", re.IGNORECASE)


class IllegalTransition(ValueError):
    """A category-resolution transition the state machine does not allow."""


# =============================================================================
# PHRASE MATCHING
# =============================================================================

def normalize_utterance(text: str) -> str:
    cleaned = re.sub(r"[^\w\s']", " ", (text or "").lower())
    return " ".join(cleaned.split())


def phrase_score(utterance: str, phrases: tuple[str, ...]) -> float:
    """Best SequenceMatcher ratio of the utterance against any phrase."""
    normalized = normalize_utterance(utterance)
    if not normalized:
        return 0.0
    return max(SequenceMatcher(None, normalized, phrase).ratio() for phrase in phrases)


def is_proceed(utterance: str) -> bool:
    return phrase_score(utterance, PROCEED_PHRASES) >= MATCH_THRESHOLD


def is_confirmation_reply(utterance: str) -> bool:
    return phrase_score(utterance, CONFIRM_PHRASES) >= MATCH_THRESHOLD


def is_decline(utterance: str) -> bool:
    return phrase_score(utterance, DECLINE_PHRASES) >= MATCH_THRESHOLD


# =============================================================================
# TRANSITIONS
# =============================================================================

def transition(
    context: ConversationContext,
    new_state: State,
    **updates,
) -> ConversationContext:
    """
    Move to a new resolution state, applying field updates.

    Raises:
        IllegalTransition: if the state machine does not allow the move
    """
    current = context.state
    if new_state not in (State.ABANDONED, State.RESOLVING) \
            and new_state not in ALLOWED_TRANSITIONS[current]:
        raise IllegalTransition(f"{current.value} -> {new_state.value}")
    return context.model_copy(update={"state": new_state, **updates})


def abandon(context: ConversationContext) -> ConversationContext:
    """The user moved on: drop the pending expense."""
    return transition(context, State.ABANDONED, pending_expense=None)


def begin_attempt(context: ConversationContext) -> ConversationContext:
    """Start resolving a new request; an unfinished pending expense is abandoned."""
    if context.pending_expense is not None:
        context = abandon(context)
    return transition(context, State.RESOLVING)


def remember_insert(
    context: ConversationContext,
    table: Entity,
    values: dict[str, SqlLiteral],
    inserted_id: Optional[str],
    catalog: UserCatalog,
) -> ConversationContext:
    """Update last_book / last_category after a successful insert."""
    if table == Entity.BOOKS and inserted_id:
        name = values["name"].value if "name" in values else ""
        return context.model_copy(update={"last_book": EntityRef(id=inserted_id, name=name)})

    if table == Entity.CATEGORIES and inserted_id:
        updates = {"last_category": EntityRef(id=inserted_id, name=values["name"].value)}
        book = catalog.book_by_id(values["bookId"].value)
        if book is not None:
            updates["last_book"] = EntityRef(id=book.id, name=book.name)
        return context.model_copy(update=updates)

    if table == Entity.EXPENSES and "categoryId" in values:
        category = catalog.category_by_id(values["categoryId"].value or "")
        book = catalog.book_for_category(values["categoryId"].value or "")
        updates = {}
        if category is not None:
            updates["last_category"] = EntityRef(id=category.id, name=category.name)
        if book is not None:
            updates["last_book"] = EntityRef(id=book.id, name=book.name)
        return context.model_copy(update=updates)

    return context


# =============================================================================
# REFERENCES
# =============================================================================

def resolve_references(utterance: str, context: ConversationContext) -> str:
    """Spell out "this book" / "this category" with the remembered names."""
    text = utterance
    if context.last_book is not None:
        text = _THIS_BOOK.sub(f'the book "{context.last_book.name}"', text)
    if context.last_category is not None:
        text = _THIS_CATEGORY.sub(f'the category "{context.last_category.name}"', text)
    return text


def mentioned_book(utterance: str, catalog: UserCatalog) -> Optional[Book]:
    """The user's book named in the utterance, longest name first."""
    for book in sorted(catalog.books, key=lambda b: len(b.name), reverse=True):
        if re.search(rf"(?<!\w){re.escape(book.name)}(?!\w)", utterance, re.IGNORECASE):
            return book
    return None


def resolve_target_book(
    utterance: str,
    context: ConversationContext,
    catalog: UserCatalog,
) -> Optional[Book]:
    """
    Book an expense with an unresolved category belongs to: a book named in
    the utterance, else the remembered book, else the user's only book.
    """
    book = mentioned_book(resolve_references(utterance, context), catalog)
    if book is not None:
        return book
    if context.last_book is not None:
        remembered = catalog.book_by_id(context.last_book.id)
        if remembered is not None:
            return remembered
    if len(catalog.books) == 1:
        return catalog.books[0]
    return None


# =============================================================================
# PENDING EXPENSE
# =============================================================================

def _text(statement: InsertStatement, column: str) -> Optional[str]:
    literal = statement.value_of(column)
    if literal is None or literal.kind != LiteralKind.STRING:
        return None
    return literal.value


def pending_from_insert(
    statement: InsertStatement,
    category_name: str,
    book: Book,
    utterance: str,
) -> PendingExpense:
    """Set an expense insert aside until its category exists."""
    return PendingExpense(
        amount=Decimal(statement.value_of("amount").value),
        description=_text(statement, "description") or "",
        date=_text(statement, "date"),
        payment_method=_text(statement, "paymentMethod"),
        book_id=book.id,
        book_name=book.name,
        category_name=category_name,
        utterance=utterance,
    )


def category_insert(pending: PendingExpense) -> InsertStatement:
    """Exactly the missing category, in the pending expense's book."""
    return InsertStatement(
        table=Entity.CATEGORIES,
        values={
            "name": SqlLiteral.string(pending.category_name),
            "bookId": SqlLiteral.string(pending.book_id),
        },
        source=f"category for pending expense: {pending.category_name}",
    )


def expense_insert(pending: PendingExpense) -> InsertStatement:
    """
    The pending expense as an insert.

    Defaults: date today, paymentMethod 'Other'.
    """
    if pending.category_id is None:
        raise ValueError("Pending expense has no category yet")
    return InsertStatement(
        table=Entity.EXPENSES,
        values={
            "amount": SqlLiteral.number(pending.amount),
            "description": SqlLiteral.string(pending.description),
            "date": SqlLiteral.string(pending.date) if pending.date else SqlLiteral.function("CURDATE"),
            "paymentMethod": SqlLiteral.string(pending.payment_method or "Other"),
            "categoryId": SqlLiteral.string(pending.category_id),
        },
        source=f"pending expense: {pending.amount} {pending.category_name}",
    )
