"""
Semantic Validator

Per-entity rules for parsed statements, checked against the requesting
user's catalog (books and categories fetched once for the request).

IMPORTANT: Validation NEVER silently fixes a statement.
It either returns the statement unchanged or raises a typed error
carrying the offending field and value.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import Boolean, Date, DateTime, Numeric

from expense_gateway.gateway.currency import SUPPORTED_CURRENCIES
from expense_gateway.gateway.errors import (
    DuplicateEntity,
    MissingCategory,
    UnknownBook,
    ValidationError,
)
from expense_gateway.models.entities import UserCatalog
from expense_gateway.models.statements import (
    Comparison,
    Entity,
    InsertStatement,
    LiteralKind,
    SelectStatement,
    SqlLiteral,
    Statement,
    UnsupportedStatement,
    UpdateStatement,
    iter_comparisons,
)
from expense_gateway.services.storage.schema import table_for


# =============================================================================
# RULE TABLES
# =============================================================================

SENSITIVE_FIELDS = frozenset({"id", "userId", "bookId", "categoryId", "createdAt", "updatedAt"})

UPDATE_ALLOWLIST: dict[Entity, frozenset[str]] = {
    Entity.BOOKS: frozenset({"name", "description", "currency", "isArchived"}),
    Entity.CATEGORIES: frozenset({"name", "description", "icon", "color", "isDisabled"}),
    Entity.EXPENSES: frozenset({"amount", "date", "description", "paymentMethod", "isDisabled"}),
}

REQUIRED_INSERT_FIELDS: dict[Entity, tuple[str, ...]] = {
    Entity.BOOKS: ("name", "currency"),
    Entity.CATEGORIES: ("name", "bookId"),
    Entity.EXPENSES: ("amount", "categoryId"),
}

PAYMENT_METHODS = ("Cash", "Credit Card", "Wire Transfer", "PayPal", "Other")

UUID_SHAPE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_PLACEHOLDER = re.compile(r"[\[\]{}<>$]|\buuid\b|_id\b|^id$|\.\.\.|^\?$", re.IGNORECASE)

# Which gateway functions may stand in for which column kinds
_FUNCTION_KINDS = {
    "UUID": {"string"},
    "NOW": {"datetime", "date"},
    "CURDATE": {"date", "datetime"},
    "YEAR": {"integer"},
    "MONTH": {"integer"},
    "DATE": {"date"},
}


# =============================================================================
# LITERAL COERCION (shared with the executor)
# =============================================================================

def is_uuid(value: Optional[str]) -> bool:
    return bool(value) and UUID_SHAPE.match(value) is not None


def column_kind(entity: Entity, column: str) -> str:
    """Python-side kind of a schema column."""
    column_type = table_for(entity).c[column].type
    if isinstance(column_type, Boolean):
        return "boolean"
    if isinstance(column_type, Numeric):
        return "decimal"
    if isinstance(column_type, DateTime):
        return "datetime"
    if isinstance(column_type, Date):
        return "date"
    return "string"


def comparison_kind(comparison: Comparison) -> str:
    """Kind the compared values must have, accounting for LIKE and wrappers."""
    if comparison.operator in ("LIKE", "NOT LIKE"):
        return "string"
    if comparison.function in ("YEAR", "MONTH"):
        return "integer"
    if comparison.function == "DATE":
        return "date"
    if comparison.function in ("LOWER", "UPPER"):
        return "string"
    return column_kind(comparison.column.table, comparison.column.column)


def function_name(literal: SqlLiteral) -> str:
    """Outer name of a function literal: 'YEAR(CURDATE)' -> 'YEAR'."""
    return literal.value.split("(", 1)[0]


def coerce_literal(kind: str, literal: SqlLiteral, field: str) -> Any:
    """
    Convert a non-function literal to the Python value for a column kind.

    Raises:
        ValidationError: if the literal cannot represent that kind
    """
    if literal.kind == LiteralKind.NULL:
        return None
    if literal.kind == LiteralKind.FUNCTION:
        raise ValidationError(f"Function {literal.value}() has no literal value", field=field)

    raw = literal.value or ""
    try:
        if kind == "string":
            if literal.kind == LiteralKind.BOOLEAN:
                raise ValueError("boolean for text column")
            return raw
        if kind == "decimal":
            if literal.kind == LiteralKind.BOOLEAN:
                raise ValueError("boolean for numeric column")
            number = Decimal(raw.strip())
            if not number.is_finite():
                raise ValueError("not a finite number")
            return number
        if kind == "integer":
            return int(raw.strip())
        if kind == "boolean":
            lowered = raw.strip().lower()
            if lowered in ("true", "1"):
                return True
            if lowered in ("false", "0"):
                return False
            raise ValueError(raw)
        if kind == "date":
            return date.fromisoformat(raw.strip()[:10])
        if kind == "datetime":
            text = raw.strip()
            if len(text) == 10:
                return datetime.combine(date.fromisoformat(text), datetime.min.time())
            return datetime.fromisoformat(text)
    except (ValueError, InvalidOperation) as e:
        raise ValidationError(
            f"Value '{raw}' is not a valid {kind} for '{field}'",
            field=field,
            value=raw,
        ) from e
    raise ValidationError(f"Unsupported column kind {kind}", field=field)


def check_literal(kind: str, literal: SqlLiteral, field: str) -> None:
    """Validate a literal (including gateway functions) against a column kind."""
    if literal.kind == LiteralKind.FUNCTION:
        allowed = _FUNCTION_KINDS.get(function_name(literal), set())
        if kind not in allowed:
            raise ValidationError(
                f"{literal.value}() cannot be used for '{field}'",
                field=field,
                value=literal.value,
            )
        return
    coerce_literal(kind, literal, field)


def _like_to_regex(pattern: str) -> re.Pattern:
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


# =============================================================================
# VALIDATOR
# =============================================================================

class StatementValidator:
    """
    Validates one parsed statement for one user.

    Rules by variant:
    - INSERT: required fields, identifier shapes, duplicates
    - UPDATE: sensitive fields, allowlist, bounded filter
    - SELECT/UPDATE filters: every book reference must be the user's
    """

    def validate(self, statement: Statement, catalog: UserCatalog) -> Statement:
        if isinstance(statement, UnsupportedStatement):
            raise ValidationError(
                f"Unsupported statement type '{statement.verb or '?'}'",
                field="statement",
                value=statement.verb,
            )
        if isinstance(statement, InsertStatement):
            self._validate_insert(statement, catalog)
        elif isinstance(statement, UpdateStatement):
            self._validate_update(statement, catalog)
        elif isinstance(statement, SelectStatement):
            self._validate_filter(statement.where, catalog)
        return statement

    # ------------------------------------------------------------------
    # INSERT
    # ------------------------------------------------------------------

    def _validate_insert(self, statement: InsertStatement, catalog: UserCatalog) -> None:
        for field in REQUIRED_INSERT_FIELDS[statement.table]:
            literal = statement.value_of(field)
            if literal is None or literal.kind == LiteralKind.NULL:
                raise ValidationError(
                    f"A new {statement.table.singular} needs a '{field}' value",
                    field=field,
                )

        for column, literal in statement.values.items():
            check_literal(column_kind(statement.table, column), literal, column)

        if statement.table == Entity.EXPENSES:
            self._validate_expense_insert(statement, catalog)
        elif statement.table == Entity.CATEGORIES:
            self._validate_category_insert(statement, catalog)
        else:
            self._validate_book_insert(statement, catalog)

    def _validate_expense_insert(self, statement: InsertStatement, catalog: UserCatalog) -> None:
        self._check_amount(statement.value_of("amount"))
        self._check_payment_method(statement.value_of("paymentMethod"))

        category_ref = statement.value_of("categoryId")
        if category_ref.kind != LiteralKind.STRING:
            raise ValidationError(
                "categoryId must be a category id",
                field="categoryId",
                value=category_ref.value,
            )
        value = category_ref.value.strip()
        if is_uuid(value):
            category = catalog.category_by_id(value)
            if category is None or category.book_id is None:
                raise ValidationError(
                    "That category is not one of your categories",
                    field="categoryId",
                    value=value,
                )
            return
        if not value or _PLACEHOLDER.search(value):
            raise ValidationError(
                "categoryId is a placeholder, not a category id",
                field="categoryId",
                value=value,
            )
        raise MissingCategory(value)

    def _validate_category_insert(self, statement: InsertStatement, catalog: UserCatalog) -> None:
        name = self._text_value(statement, "name")
        book_ref = self._text_value(statement, "bookId")

        if not is_uuid(book_ref):
            if not catalog.books_named(book_ref):
                raise UnknownBook(book_ref, catalog.book_names(), field="bookId")
            raise ValidationError(
                "bookId must be the book's id, not its name",
                field="bookId",
                value=book_ref,
            )
        book = catalog.book_by_id(book_ref)
        if book is None:
            raise UnknownBook(book_ref, catalog.book_names(), field="bookId")

        is_default = statement.value_of("isDefault")
        if is_default is not None and coerce_literal("boolean", is_default, "isDefault"):
            raise ValidationError(
                "Template categories cannot be created from chat",
                field="isDefault",
                value=is_default.value,
            )

        if catalog.find_category(book.id, name) is not None:
            raise DuplicateEntity("category", name, scope=f"book '{book.name}'")

    def _validate_book_insert(self, statement: InsertStatement, catalog: UserCatalog) -> None:
        name = self._text_value(statement, "name")
        self._check_currency(statement.value_of("currency"))
        existing = catalog.books_named(name, include_archived=True)
        if existing:
            scope = "your archived books" if existing[0].is_archived else ""
            raise DuplicateEntity("book", name, scope=scope)

    # ------------------------------------------------------------------
    # UPDATE
    # ------------------------------------------------------------------

    def _validate_update(self, statement: UpdateStatement, catalog: UserCatalog) -> None:
        fields = statement.assigned_fields
        sensitive = sorted(fields & SENSITIVE_FIELDS)
        if sensitive:
            raise ValidationError(
                f"'{sensitive[0]}' cannot be changed",
                field=sensitive[0],
            )
        outside = sorted(fields - UPDATE_ALLOWLIST[statement.table])
        if outside:
            raise ValidationError(
                f"'{outside[0]}' cannot be changed on a {statement.table.singular}",
                field=outside[0],
            )

        for assignment in statement.assignments:
            kind = column_kind(statement.table, assignment.column)
            check_literal(kind, assignment.value, assignment.column)
            if assignment.column == "amount":
                self._check_amount(assignment.value)
            elif assignment.column == "paymentMethod":
                self._check_payment_method(assignment.value)
            elif assignment.column == "currency":
                self._check_currency(assignment.value)
            elif assignment.column == "name" and assignment.value.kind == LiteralKind.NULL:
                raise ValidationError("A name cannot be empty", field="name")

        scoped = [c for c in iter_comparisons(statement.where) if not _is_owner_filter(c)]
        if not scoped and statement.limit is None:
            raise ValidationError(
                f"Refusing to update every {statement.table.singular}: add a filter",
                field="WHERE",
            )

        self._validate_filter(statement.where, catalog)

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _validate_filter(self, where, catalog: UserCatalog) -> None:
        for comparison in iter_comparisons(where):
            kind = comparison_kind(comparison)
            field = comparison.column.qualified
            for literal in comparison.values:
                check_literal(kind, literal, field)
            self._check_book_reference(comparison, catalog)

    def _check_book_reference(self, comparison: Comparison, catalog: UserCatalog) -> None:
        column = comparison.column
        operator = comparison.operator
        if operator not in ("=", "IN", "LIKE"):
            return

        strings = [v.value for v in comparison.values if v.kind == LiteralKind.STRING]

        if column.table == Entity.BOOKS and column.column == "name":
            for value in strings:
                if operator == "LIKE":
                    pattern = _like_to_regex(value)
                    found = any(pattern.match(name) for name in catalog.book_names(include_archived=True))
                    reference = value.strip("%")
                else:
                    found = bool(catalog.books_named(value, include_archived=True))
                    reference = value
                if not found:
                    raise UnknownBook(reference, catalog.book_names())

        elif (column.table, column.column) in ((Entity.BOOKS, "id"), (Entity.CATEGORIES, "bookId")):
            for value in strings:
                if operator != "LIKE" and catalog.book_by_id(value, include_archived=True) is None:
                    raise UnknownBook(value, catalog.book_names(), field=column.qualified)

    # ------------------------------------------------------------------
    # Field helpers
    # ------------------------------------------------------------------

    def _text_value(self, statement: InsertStatement, field: str) -> str:
        literal = statement.value_of(field)
        if literal.kind != LiteralKind.STRING or not literal.value.strip():
            raise ValidationError(
                f"'{field}' must be a non-empty text value",
                field=field,
                value=literal.value,
            )
        return literal.value.strip()

    def _check_amount(self, literal: Optional[SqlLiteral]) -> None:
        if literal is None or literal.kind == LiteralKind.NULL:
            raise ValidationError("An amount is required", field="amount")
        amount = coerce_literal("decimal", literal, "amount")
        if amount < 0:
            raise ValidationError("Amounts cannot be negative", field="amount", value=str(amount))

    def _check_payment_method(self, literal: Optional[SqlLiteral]) -> None:
        if literal is None or literal.kind == LiteralKind.NULL:
            return
        if literal.value not in PAYMENT_METHODS:
            raise ValidationError(
                f"Payment method must be one of: {', '.join(PAYMENT_METHODS)}",
                field="paymentMethod",
                value=literal.value,
            )

    def _check_currency(self, literal: Optional[SqlLiteral]) -> None:
        value = literal.value if literal is not None else None
        if value not in SUPPORTED_CURRENCIES:
            raise ValidationError(
                f"'{value}' is not a supported currency code",
                field="currency",
                value=value,
            )


def _is_owner_filter(comparison: Comparison) -> bool:
    return comparison.column.table == Entity.BOOKS and comparison.column.column == "userId"
