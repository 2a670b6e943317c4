"""
Relational Schema

SQLAlchemy Core table definitions for the columns the gateway reads and
writes. The gateway renders every generated statement against these
tables with bound parameters; no model text reaches the driver.

Column names are camelCase to match the existing application database.
"""

from datetime import date, datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

from expense_gateway.models.statements import Entity


metadata = MetaData()


def _new_id() -> str:
    return str(uuid4())


users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("createdAt", DateTime, default=datetime.utcnow),
)

books = Table(
    "books",
    metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("userId", String(36), ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("currency", String(3), nullable=False),
    Column("isArchived", Boolean, nullable=False, default=False),
    Column("createdAt", DateTime, default=datetime.utcnow),
    Column("updatedAt", DateTime, default=datetime.utcnow, onupdate=datetime.utcnow),
)

categories = Table(
    "categories",
    metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("bookId", String(36), ForeignKey("books.id"), nullable=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("icon", String(64)),
    Column("color", String(32)),
    Column("isDisabled", Boolean, nullable=False, default=False),
    Column("isDefault", Boolean, nullable=False, default=False),
    Column("createdAt", DateTime, default=datetime.utcnow),
    Column("updatedAt", DateTime, default=datetime.utcnow, onupdate=datetime.utcnow),
)

expenses = Table(
    "expenses",
    metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("categoryId", String(36), ForeignKey("categories.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("date", Date, nullable=False, default=date.today),
    Column("description", Text),
    Column("paymentMethod", String(32), default="Other"),
    Column("isDisabled", Boolean, nullable=False, default=False),
    Column("createdAt", DateTime, default=datetime.utcnow),
    Column("updatedAt", DateTime, default=datetime.utcnow, onupdate=datetime.utcnow),
)

chat_messages = Table(
    "chat_messages",
    metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("userId", String(36), ForeignKey("users.id"), nullable=False),
    Column("role", String(16), nullable=False),
    Column("content", Text, nullable=False),
    Column("createdAt", DateTime, nullable=False, default=datetime.utcnow),
)


ENTITY_TABLES: dict[Entity, Table] = {
    Entity.BOOKS: books,
    Entity.CATEGORIES: categories,
    Entity.EXPENSES: expenses,
}

# Ownership chain, starting at each entity and ending at books.userId
OWNERSHIP_CHAIN: dict[Entity, tuple[Entity, ...]] = {
    Entity.EXPENSES: (Entity.EXPENSES, Entity.CATEGORIES, Entity.BOOKS),
    Entity.CATEGORIES: (Entity.CATEGORIES, Entity.BOOKS),
    Entity.BOOKS: (Entity.BOOKS,),
}


def _fold(name: str) -> str:
    return name.replace("_", "").lower()


_COLUMN_INDEX: dict[Entity, dict[str, str]] = {
    entity: {_fold(column.name): column.name for column in table.columns}
    for entity, table in ENTITY_TABLES.items()
}


def table_for(entity: Entity) -> Table:
    return ENTITY_TABLES[entity]


def canonical_column(entity: Entity, name: str) -> Optional[str]:
    """
    Resolve a column name as the model wrote it to the schema's spelling.

    Matching ignores case and underscores, so `category_id`, `CATEGORYID`
    and `categoryId` all resolve to `categoryId`.
    """
    return _COLUMN_INDEX[entity].get(_fold(name))


def resolve_entity(name: str) -> Optional[Entity]:
    """Map a table name to a known entity, or None."""
    wanted = name.lower()
    for entity in Entity:
        if entity.value == wanted:
            return entity
    return None
