"""
Ledger Entity Models

These models mirror the rows the gateway reads from the relational store.
The gateway does not own storage; it only needs enough of each entity to
prompt the model, validate generated statements, and resolve foreign keys
back to display names.

DESIGN DECISION: The UserCatalog is fetched ONCE per request and is the
only source of truth for "what belongs to this user" during that request.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class ChatRole(str, Enum):
    """Who authored a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"


class Book(BaseModel):
    """A named ledger owned by exactly one user."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str
    user_id: str
    name: str = Field(..., min_length=1, max_length=200)
    currency: str = Field(..., min_length=3, max_length=3)
    description: str = ""
    is_archived: bool = False


class Category(BaseModel):
    """
    An expense bucket.

    Template categories (is_default with no book) exist only to be copied.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str
    book_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    icon: str = ""
    color: str = ""
    is_disabled: bool = False
    is_default: bool = False

    @property
    def is_template(self) -> bool:
        return self.is_default and self.book_id is None


class ConversationTurn(BaseModel):
    """One entry of the append-only per-user chat log."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    role: ChatRole
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class UserCatalog(BaseModel):
    """
    Request-scoped view of the requesting user's books and categories.

    `books` holds the active books the model is shown in its prompt and that
    new expenses and categories may target. Archived books are kept apart so
    they can still be found by name (to restore them) and still count as
    duplicates. Only non-disabled categories of active books are included.
    """

    user_id: str
    books: list[Book] = Field(default_factory=list)
    archived_books: list[Book] = Field(default_factory=list)
    categories: list[Category] = Field(default_factory=list)

    @property
    def all_books(self) -> list[Book]:
        return self.books + self.archived_books

    def book_by_id(self, book_id: str, include_archived: bool = False) -> Optional[Book]:
        candidates = self.all_books if include_archived else self.books
        return next((b for b in candidates if b.id == book_id), None)

    def category_by_id(self, category_id: str) -> Optional[Category]:
        return next((c for c in self.categories if c.id == category_id), None)

    def books_named(self, name: str, include_archived: bool = False) -> list[Book]:
        """Case-insensitive name lookup among the user's books."""
        wanted = name.strip().lower()
        candidates = self.all_books if include_archived else self.books
        return [b for b in candidates if b.name.lower() == wanted]

    def categories_in_book(self, book_id: str) -> list[Category]:
        return [c for c in self.categories if c.book_id == book_id]

    def find_category(self, book_id: str, name: str) -> Optional[Category]:
        """Case-insensitive category lookup scoped to one book."""
        wanted = name.strip().lower()
        return next(
            (c for c in self.categories_in_book(book_id) if c.name.lower() == wanted),
            None,
        )

    def book_for_category(self, category_id: str) -> Optional[Book]:
        category = self.category_by_id(category_id)
        if category is None or category.book_id is None:
            return None
        return self.book_by_id(category.book_id)

    def book_names(self, include_archived: bool = False) -> list[str]:
        return [b.name for b in (self.all_books if include_archived else self.books)]
