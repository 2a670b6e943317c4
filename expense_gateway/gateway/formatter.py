"""
Response Formatter

CRITICAL: The model's own "success" wording never reaches the user.
- Confirmation-shaped sentences are stripped from any model prose.
- Writes are described by the gateway, field by field, from the executed
  statement and the request catalog.
- Reads are rendered by row shape with currency symbols and calendar dates.

A final self-check compares the response against the confirmation
sentences found in the raw model reply. A hit is a gateway bug: it is
audited and the phrase is removed, never shown.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from uuid import UUID

import structlog

from expense_gateway.gateway.currency import format_money
from expense_gateway.gateway.extractor import strip_code_blocks
from expense_gateway.models.chat import OutcomeStatus, StatementOutcome
from expense_gateway.models.entities import UserCatalog
from expense_gateway.models.statements import (
    Entity,
    InsertStatement,
    LiteralKind,
    SqlLiteral,
    StatementKind,
    UpdateStatement,
)


logger = structlog.get_logger(__name__)


_WRITE_VERBS = r"(?:added|created|inserted|updated|saved|recorded|logged|stored|changed|deleted|removed)"

CONFIRMATION_PATTERNS = (
    re.compile(r"✅"),
    re.compile(r"\bsuccessful(?:ly)?\b", re.IGNORECASE),
    re.compile(rf"\b{_WRITE_VERBS}\b", re.IGNORECASE),
    re.compile(r"\b(?:it|expense|that|everything)(?:'s|\s+is)\s+(?:now\s+|all\s+)?in\b", re.IGNORECASE),
    re.compile(r"\bdone\b", re.IGNORECASE),
)

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+|\n+")

_HIDDEN_FIELDS = frozenset({"id", "userId", "createdAt", "updatedAt"})
_HIDDEN_ROW_FIELDS = frozenset({
    "id", "userId", "bookId", "categoryId", "isDisabled", "isArchived",
    "createdAt", "updatedAt", "book_currency",
})

NO_OPERATION_WARNING = (
    "⚠️ No database operation was performed. Please restate the request with "
    "the details needed, for example \"Add expense $50 for groceries in the Food category\"."
)

_CREATION_WORDS = re.compile(r"\b(?:add|create|insert|record|log|new)\b", re.IGNORECASE)


# =============================================================================
# CONFIRMATION SCRUBBING
# =============================================================================

def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_END.split(text or "") if s and s.strip()]


def is_confirmation(sentence: str) -> bool:
    """A past-tense write in any voice. Questions never count."""
    if sentence.rstrip().endswith("?"):
        return False
    return any(pattern.search(sentence) for pattern in CONFIRMATION_PATTERNS)


def confirmation_sentences(text: str) -> list[str]:
    """Every confirmation-shaped sentence in a piece of model prose."""
    return [s for s in split_sentences(text) if is_confirmation(s)]


def scrub_confirmations(text: str) -> str:
    """Remove every sentence that reads like a success confirmation."""
    kept_lines = []
    for line in (text or "").splitlines():
        sentences = [s for s in re.split(r"(?<=[.!?])\s+", line) if s.strip()]
        kept = [s.strip() for s in sentences if not is_confirmation(s)]
        if kept:
            kept_lines.append(" ".join(kept))
    return "\n".join(kept_lines).strip()


def asked_to_create(user_message: str) -> bool:
    return bool(_CREATION_WORDS.search(user_message or ""))


# =============================================================================
# VALUE DISPLAY
# =============================================================================

def display_date(value: Any) -> str:
    """Calendar date, e.g. 'Oct 16, 2026'."""
    if isinstance(value, datetime):
        value = value.date()
    elif isinstance(value, str):
        try:
            value = date.fromisoformat(value.strip()[:10])
        except ValueError:
            return value
    if isinstance(value, date):
        return value.strftime("%b %d, %Y")
    return str(value)


def _decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _plural(count: int, singular: str) -> str:
    return singular if count == 1 else f"{singular}s"


def _literal_display(column: str, literal: SqlLiteral, currency: Optional[str]) -> Optional[str]:
    if literal.kind == LiteralKind.NULL:
        return None
    if literal.kind == LiteralKind.FUNCTION:
        if literal.value in ("CURDATE", "NOW"):
            return display_date(date.today())
        return None
    if literal.kind == LiteralKind.BOOLEAN:
        return "yes" if literal.value == "true" else "no"
    if column == "amount":
        amount = _decimal(literal.value)
        return format_money(amount, currency) if amount is not None else literal.value
    if column == "date":
        return display_date(literal.value)
    return literal.value


# =============================================================================
# WRITES
# =============================================================================

def describe_fields(
    table: Entity,
    values: dict[str, SqlLiteral],
    catalog: UserCatalog,
    currency: Optional[str] = None,
) -> str:
    """
    One-line, field-by-field description of written values.

    categoryId and bookId are shown as the referenced names.
    """
    category_ref = values.get("categoryId")
    if table == Entity.EXPENSES and category_ref is not None and category_ref.value:
        book = catalog.book_for_category(category_ref.value)
        currency = book.currency if book else None

    parts = []
    for column, literal in values.items():
        if column in _HIDDEN_FIELDS:
            continue
        if column == "categoryId":
            category = catalog.category_by_id(literal.value or "")
            parts.append(f"category: {category.name if category else 'unknown'}")
            continue
        if column == "bookId":
            book = catalog.book_by_id(literal.value or "")
            parts.append(f"book: {book.name if book else 'unknown'}")
            continue
        shown = _literal_display(column, literal, currency)
        if shown is not None and shown != "":
            parts.append(f"{column}: {shown}")
    return ", ".join(parts)


def render_write(outcome: StatementOutcome, catalog: UserCatalog) -> str:
    statement = outcome.statement
    entity = outcome.table.singular if outcome.table else "record"

    if isinstance(statement, InsertStatement):
        fields = describe_fields(statement.table, statement.values, catalog)
        return f"New {entity}: {fields}" if fields else f"New {entity} added to your ledger."

    if isinstance(statement, UpdateStatement):
        if outcome.row_count == 0:
            return f"No matching {entity}s were changed."
        values = {a.column: a.value for a in statement.assignments}
        # An expense update spans no single book; the only book is the best guess.
        currency = catalog.books[0].currency if len(catalog.books) == 1 else None
        fields = describe_fields(statement.table, values, catalog, currency=currency)
        return f"Changed {outcome.row_count} {_plural(outcome.row_count, entity)}: {fields}"

    return f"{outcome.row_count} {_plural(outcome.row_count, entity)} affected."


# =============================================================================
# READS
# =============================================================================

def classify_row(row: dict) -> str:
    """Shape of a result row: expense, book, category or generic."""
    if "amount" in row:
        return "expense"
    if "bookId" in row or ("category_name" in row and "name" not in row):
        return "category"
    if "currency" in row and "name" in row:
        return "book"
    return "generic"


def _expense_line(row: dict, catalog: UserCatalog) -> str:
    currency = row.get("book_currency") or row.get("currency")
    category_name = row.get("category_name")
    book_name = row.get("book_name")
    if row.get("categoryId"):
        category = catalog.category_by_id(row["categoryId"])
        book = catalog.book_for_category(row["categoryId"])
        category_name = category_name or (category.name if category else None)
        if book is not None:
            book_name = book_name or book.name
            currency = currency or book.currency

    amount = _decimal(row.get("amount"))
    line = format_money(amount, currency) if amount is not None else str(row.get("amount"))
    if row.get("description"):
        line += f' for "{row["description"]}"'
    if category_name:
        line += f" [{category_name}]"
    if book_name:
        line += f" in {book_name}"
    if row.get("paymentMethod"):
        line += f" via {row['paymentMethod']}"
    if row.get("date"):
        line += f" on {display_date(row['date'])}"
    return line


def _book_line(row: dict, catalog: UserCatalog) -> str:
    line = f"Book: {row.get('name') or row.get('book_name') or 'Unknown'}"
    if row.get("currency"):
        line += f" with currency {row['currency']}"
    return line


def _category_line(row: dict, catalog: UserCatalog) -> str:
    line = f"Category: {row.get('name') or row.get('category_name') or 'Unknown'}"
    book_name = row.get("book_name")
    if not book_name and row.get("bookId"):
        book = catalog.book_by_id(row["bookId"])
        book_name = book.name if book else None
    if book_name:
        line += f" in {book_name} book"
    return line


def _generic_line(row: dict, catalog: UserCatalog) -> str:
    currency = row.get("book_currency")
    shown = []
    for key, value in row.items():
        if key in _HIDDEN_ROW_FIELDS or value is None:
            continue
        if isinstance(value, Decimal):
            amount = _decimal(value)
            shown.append(f"{key}: {format_money(amount, currency) if amount is not None else value}")
        elif isinstance(value, (date, datetime)):
            shown.append(f"{key}: {display_date(value)}")
        else:
            shown.append(f"{key}: {value}")
    return ", ".join(shown)


_LINE_RENDERERS = {
    "expense": _expense_line,
    "book": _book_line,
    "category": _category_line,
    "generic": _generic_line,
}


def render_rows(rows: list[dict], catalog: UserCatalog) -> str:
    if not rows:
        return "No records found."
    lines = [f"📊 Found {len(rows)} {_plural(len(rows), 'record')}:"]
    for number, row in enumerate(rows, start=1):
        text = _LINE_RENDERERS[classify_row(row)](row, catalog)
        lines.append(f"  {number}. {text}")
    return "\n".join(lines)


def render_outcome(outcome: StatementOutcome, catalog: UserCatalog) -> str:
    if outcome.status == OutcomeStatus.FAILED:
        return f"❌ {outcome.message}"
    if outcome.status == OutcomeStatus.REJECTED:
        return f"⚠️ {outcome.message}"
    if outcome.kind == StatementKind.SELECT:
        return render_rows(outcome.rows, catalog)
    return render_write(outcome, catalog)


# =============================================================================
# FORMATTER
# =============================================================================

class ResponseFormatter:
    """
    Builds the user-visible response for one chat turn.

    Usage:
        formatter = ResponseFormatter(audit_logger)
        text = await formatter.format(reply_text, outcomes, catalog, ...)
    """

    def __init__(self, audit_logger=None):
        self._audit = audit_logger

    async def format(
        self,
        raw_reply: str,
        outcomes: list[StatementOutcome],
        catalog: UserCatalog,
        user_message: str = "",
        notes: Optional[list[str]] = None,
        advisories: Optional[list[str]] = None,
        prompt: Optional[str] = None,
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> str:
        """
        Args:
            raw_reply: the model's reply, used for prose and the self-check
            outcomes: per-statement results; empty when the reply had no SQL
            notes: gateway notes such as currency conversions
            advisories: non-fatal warnings such as a failed conversion
            prompt: a gateway question appended last (category creation)
        """
        sections: list[str] = []

        if outcomes:
            if len(outcomes) == 1:
                sections.append(render_outcome(outcomes[0], catalog))
            else:
                for position, outcome in enumerate(outcomes, start=1):
                    sections.append(f"{position}. {render_outcome(outcome, catalog)}")
        else:
            prose = scrub_confirmations(strip_code_blocks(raw_reply or ""))
            if prose:
                sections.append(prose)
            elif not prompt and asked_to_create(user_message):
                sections.append(NO_OPERATION_WARNING)

        sections.extend(notes or [])
        sections.extend(f"⚠️ {a}" for a in advisories or [])
        if prompt:
            sections.append(prompt)

        text = "\n\n".join(s for s in sections if s)
        return await self._self_check(text, raw_reply, user_id, correlation_id)

    async def _self_check(
        self,
        text: str,
        raw_reply: str,
        user_id: Optional[str],
        correlation_id: Optional[UUID],
    ) -> str:
        lowered = text.lower()
        leaks = [s for s in confirmation_sentences(raw_reply) if s.lower() in lowered]
        for phrase in leaks:
            logger.error("confirmation_leak", phrase=phrase)
            if self._audit is not None:
                await self._audit.log_confirmation_leak(
                    user_id=user_id,
                    phrase=phrase,
                    correlation_id=correlation_id,
                )
            text = re.sub(re.escape(phrase), "", text, flags=re.IGNORECASE)
        if leaks:
            text = re.sub(r"\n{3,}", "\n\n", text).strip()
        return text or NO_OPERATION_WARNING


