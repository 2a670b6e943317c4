"""
Tenant-Isolation Rewriter

Rebuilds the ownership scope of every statement, whatever the model wrote.

CRITICAL: This is the only place a statement is ever changed for scoping.
- SELECT / UPDATE: joins become exactly the ownership chain, every
  predicate on books.userId is removed, and owner_id is set. The executor
  renders owner_id as `books.userId = :owner`.
- INSERT INTO books: userId is forced to the requesting user.

The rewrite is idempotent: rewrite(rewrite(s)) == rewrite(s).
"""

from typing import Optional

from expense_gateway.models.statements import (
    BoolGroup,
    ColumnRef,
    Comparison,
    Entity,
    InsertStatement,
    Join,
    Predicate,
    SelectStatement,
    SqlLiteral,
    Statement,
    UpdateStatement,
)


_EXPENSE_TO_CATEGORY = Join(
    table=Entity.CATEGORIES,
    left=ColumnRef(table=Entity.EXPENSES, column="categoryId"),
    right=ColumnRef(table=Entity.CATEGORIES, column="id"),
)
_CATEGORY_TO_BOOK = Join(
    table=Entity.BOOKS,
    left=ColumnRef(table=Entity.CATEGORIES, column="bookId"),
    right=ColumnRef(table=Entity.BOOKS, column="id"),
)

CANONICAL_JOINS: dict[Entity, tuple[Join, ...]] = {
    Entity.EXPENSES: (_EXPENSE_TO_CATEGORY, _CATEGORY_TO_BOOK),
    Entity.CATEGORIES: (_CATEGORY_TO_BOOK,),
    Entity.BOOKS: (),
}

OWNER_COLUMN = ColumnRef(table=Entity.BOOKS, column="userId")


def strip_owner_predicates(predicate: Optional[Predicate]) -> Optional[Predicate]:
    """Remove every comparison on books.userId, collapsing emptied groups."""
    if predicate is None:
        return None
    if isinstance(predicate, Comparison):
        return None if predicate.column == OWNER_COLUMN else predicate

    kept = [
        item for item in (strip_owner_predicates(i) for i in predicate.items)
        if item is not None
    ]
    if not kept:
        return None
    if len(kept) == 1:
        return kept[0]
    return BoolGroup(operator=predicate.operator, items=tuple(kept))


class TenantRewriter:
    """Scopes statements to one requesting user."""

    def __init__(self, user_id: str):
        if not user_id:
            raise ValueError("TenantRewriter requires a user id")
        self._user_id = user_id

    def rewrite(self, statement: Statement) -> Statement:
        if isinstance(statement, (SelectStatement, UpdateStatement)):
            return statement.model_copy(update={
                "joins": CANONICAL_JOINS[statement.table],
                "where": strip_owner_predicates(statement.where),
                "owner_id": self._user_id,
            })

        if isinstance(statement, InsertStatement) and statement.table == Entity.BOOKS:
            values = dict(statement.values)
            values["userId"] = SqlLiteral.string(self._user_id)
            return statement.model_copy(update={"values": values})

        return statement
