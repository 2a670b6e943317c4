"""
Gateway Error Taxonomy

Every stage raises one of these. The orchestrator turns them into
per-statement outcomes; none of them escape to the chat endpoint.
"""

from typing import Any, Optional


class GatewayError(Exception):
    """Base exception for the chat gateway."""
    error_code = "gateway_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SecurityViolation(GatewayError):
    """A statement failed lexical screening. Fatal, never executed."""
    error_code = "security_violation"


class ValidationError(GatewayError):
    """A statement broke a semantic rule for one field."""
    error_code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        super().__init__(message)
        self.field = field
        self.value = value


class MissingCategory(ValidationError):
    """
    An expense insert named a category label that does not exist yet
    in the target book.
    """
    error_code = "missing_category"

    def __init__(
        self,
        label: str,
        book_id: Optional[str] = None,
        book_name: Optional[str] = None,
    ):
        where = f" in book '{book_name}'" if book_name else ""
        super().__init__(
            f"Category '{label}' does not exist{where}.",
            field="categoryId",
            value=label,
        )
        self.label = label
        self.book_id = book_id
        self.book_name = book_name


class UnknownBook(ValidationError):
    """A statement referenced a book the user does not own."""
    error_code = "unknown_book"

    def __init__(self, reference: str, available: list[str], field: str = "books.name"):
        if available:
            listing = ", ".join(f"'{name}'" for name in available)
            message = f"You don't have a book named '{reference}'. Your books are: {listing}."
        else:
            message = f"You don't have a book named '{reference}'. You have no books yet."
        super().__init__(message, field=field, value=reference)
        self.reference = reference
        self.available = available


class DuplicateEntity(GatewayError):
    """A book or category with the same name already exists. A normal outcome."""
    error_code = "duplicate_entity"

    def __init__(self, entity: str, name: str, scope: str = ""):
        suffix = f" in {scope}" if scope else ""
        super().__init__(f"A {entity} named '{name}' already exists{suffix}.")
        self.entity = entity
        self.name = name


class UpstreamUnavailable(GatewayError):
    """The language model or the rate service failed."""
    error_code = "upstream_unavailable"

    def __init__(self, service: str, message: str):
        super().__init__(message)
        self.service = service


class ExecutionFailure(GatewayError):
    """The store rejected a statement. The message is shown to the user."""
    error_code = "execution_failure"
