"""
Statement Executor

DESIGN DECISION: The IR is rendered back to SQL only here, as SQLAlchemy
Core constructs with bound parameters. Model text never reaches the
driver.

Execution rules:
- Statements run one at a time, each in its own transaction.
- There is NO transaction spanning statements: a later failure never
  rolls back an earlier success. Callers report per-statement outcomes.
- UUID(), NOW() and CURDATE() are evaluated here as Python values.
- An UPDATE first selects its target ids through the scoped chain, then
  updates `id IN (...)` while still carrying the owner filter.
"""

from datetime import datetime
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable, Optional, Union
from uuid import uuid4

import structlog
from sqlalchemy import and_, extract, func, insert, or_, select, update

from expense_gateway.gateway.errors import ExecutionFailure, GatewayError, ValidationError
from expense_gateway.gateway.validator import (
    coerce_literal,
    column_kind,
    comparison_kind,
)
from expense_gateway.models.chat import OutcomeStatus, StatementOutcome
from expense_gateway.models.statements import (
    BoolGroup,
    ColumnRef,
    Comparison,
    Entity,
    InsertStatement,
    Predicate,
    Projection,
    SelectStatement,
    SqlLiteral,
    Statement,
    StatementKind,
    UnsupportedStatement,
    UpdateStatement,
)
from expense_gateway.services.storage.interface import (
    LedgerStoreInterface,
    LedgerTransaction,
    StorageError,
)
from expense_gateway.services.storage.schema import books, categories, table_for


logger = structlog.get_logger(__name__)


_AGGREGATES = {
    "SUM": func.sum,
    "AVG": func.avg,
    "MIN": func.min,
    "MAX": func.max,
    "COUNT": func.count,
}

# Labels given to chain columns selected from a non-base table
_CHAIN_LABELS = {
    (Entity.CATEGORIES, "name"): "category_name",
    (Entity.BOOKS, "name"): "book_name",
    (Entity.BOOKS, "currency"): "book_currency",
}


# =============================================================================
# VALUE RENDERING
# =============================================================================

def evaluate_function(name: str, now: datetime) -> Any:
    """Compute a gateway function: UUID, NOW, CURDATE, or YEAR/MONTH/DATE of one."""
    if "(" in name:
        part, inner = name[:-1].split("(", 1)
        value = evaluate_function(inner, now)
        if part == "YEAR":
            return value.year
        if part == "MONTH":
            return value.month
        return value.date() if isinstance(value, datetime) else value
    if name == "UUID":
        return str(uuid4())
    if name == "NOW":
        return now
    if name == "CURDATE":
        return now.date()
    raise ValidationError(f"Unknown function {name}()", value=name)


def literal_value(kind: str, literal: SqlLiteral, field: str, now: datetime) -> Any:
    if literal.is_function:
        value = evaluate_function(literal.value, now)
        if kind == "date" and isinstance(value, datetime):
            return value.date()
        return value
    return coerce_literal(kind, literal, field)


def _column(ref: ColumnRef):
    return table_for(ref.table).c[ref.column]


def _wrapped(comparison: Comparison):
    column = _column(comparison.column)
    function = comparison.function
    if function is None:
        return column
    if function in ("YEAR", "MONTH"):
        return extract(function.lower(), column)
    if function == "DATE":
        return func.date(column)
    if function == "LOWER":
        return func.lower(column)
    if function == "UPPER":
        return func.upper(column)
    raise ValidationError(f"Unsupported column function {function}", field=comparison.column.column)


def render_predicate(predicate: Predicate, now: datetime):
    if isinstance(predicate, BoolGroup):
        parts = [render_predicate(item, now) for item in predicate.items]
        return and_(*parts) if predicate.operator == "AND" else or_(*parts)

    expression = _wrapped(predicate)
    kind = comparison_kind(predicate)
    field = predicate.column.qualified
    values = [literal_value(kind, v, field, now) for v in predicate.values]
    operator = predicate.operator

    if operator == "IS NULL":
        return expression.is_(None)
    if operator == "IS NOT NULL":
        return expression.is_not(None)
    if operator == "IN":
        return expression.in_(values)
    if operator == "NOT IN":
        return expression.not_in(values)
    if operator == "BETWEEN":
        return expression.between(values[0], values[1])
    if operator == "LIKE":
        return expression.like(values[0])
    if operator == "NOT LIKE":
        return expression.not_like(values[0])

    value = values[0]
    if operator == "=":
        return expression.is_(None) if value is None else expression == value
    if operator == "!=":
        return expression.is_not(None) if value is None else expression != value
    if operator == "<":
        return expression < value
    if operator == "<=":
        return expression <= value
    if operator == ">":
        return expression > value
    if operator == ">=":
        return expression >= value
    raise ValidationError(f"Unsupported operator {operator}", field=field)


def _from_clause(statement):
    clause = table_for(statement.table)
    for join in statement.joins:
        clause = clause.join(table_for(join.table), _column(join.left) == _column(join.right))
    return clause


def _owner_filter(statement):
    if not statement.owner_id:
        raise ValidationError(
            "Statement is not scoped to the requesting user",
            field="owner",
        )
    return books.c.userId == statement.owner_id


def _owner_scope(entity: Entity, owner_id: str):
    """Ownership condition on the target table itself, as an IN subquery."""
    table = table_for(entity)
    if entity == Entity.EXPENSES:
        owned = (
            select(categories.c.id)
            .join(books, categories.c.bookId == books.c.id)
            .where(books.c.userId == owner_id)
        )
        return table.c.categoryId.in_(owned)
    if entity == Entity.CATEGORIES:
        return table.c.bookId.in_(select(books.c.id).where(books.c.userId == owner_id))
    return table.c.userId == owner_id


# =============================================================================
# STATEMENT RENDERING
# =============================================================================

def render_insert(statement: InsertStatement, now: datetime):
    table = table_for(statement.table)
    values = {
        column: literal_value(column_kind(statement.table, column), literal, column, now)
        for column, literal in statement.values.items()
    }
    values.setdefault("createdAt", now)
    values.setdefault("updatedAt", now)
    return insert(table).values(**values)


def _projection_columns(statement: SelectStatement, projection: Projection) -> list:
    base = statement.table
    if projection.kind == "star":
        entity = projection.star_table or base
        table = table_for(entity)
        columns = list(table.columns)
        if entity == Entity.EXPENSES:
            columns += [
                categories.c.name.label("category_name"),
                books.c.name.label("book_name"),
                books.c.currency.label("book_currency"),
            ]
        elif entity == Entity.CATEGORIES:
            columns += [books.c.name.label("book_name"), books.c.currency.label("book_currency")]
        return columns

    if projection.kind == "aggregate":
        function = _AGGREGATES[projection.function]
        expression = function() if projection.column is None else function(_column(projection.column))
        if projection.label:
            label = projection.label
        elif projection.column is None:
            label = projection.function.lower()
        else:
            label = f"{projection.function.lower()}_{projection.column.column}"
        return [expression.label(label)]

    column = _column(projection.column)
    if projection.label:
        return [column.label(projection.label)]
    chain_label = _CHAIN_LABELS.get((projection.column.table, projection.column.column))
    if chain_label and projection.column.table != base:
        return [column.label(chain_label)]
    return [column]


def render_select(statement: SelectStatement, now: datetime, max_rows: int):
    columns = []
    for projection in statement.projections:
        columns.extend(_projection_columns(statement, projection))

    labels = {getattr(c, "name", None) for c in columns}
    if "book_currency" not in labels and not statement.distinct:
        if statement.is_aggregate:
            columns.append(func.min(books.c.currency).label("book_currency"))
        elif not any(c is books.c.currency for c in columns):
            columns.append(books.c.currency.label("book_currency"))

    by_label = {c.name: c for c in columns if hasattr(c, "name")}

    query = select(*columns).select_from(_from_clause(statement))
    if statement.distinct:
        query = query.distinct()

    conditions = [_owner_filter(statement)]
    if statement.where is not None:
        conditions.append(render_predicate(statement.where, now))
    query = query.where(and_(*conditions))

    if statement.group_by:
        query = query.group_by(*[_column(c) for c in statement.group_by])

    for item in statement.order_by:
        if item.label is not None:
            expression = by_label[item.label]
        elif item.function is not None:
            function = _AGGREGATES[item.function]
            expression = function() if item.column is None else function(_column(item.column))
        else:
            expression = _column(item.column)
        query = query.order_by(expression.desc() if item.descending else expression.asc())

    limit = max_rows if statement.limit is None else min(statement.limit, max_rows)
    query = query.limit(limit)
    if statement.offset:
        query = query.offset(statement.offset)
    return query


def render_update_targets(statement: UpdateStatement, now: datetime):
    """Phase one of an UPDATE: the scoped ids it may touch."""
    table = table_for(statement.table)
    conditions = [_owner_filter(statement)]
    if statement.where is not None:
        conditions.append(render_predicate(statement.where, now))
    query = select(table.c.id).select_from(_from_clause(statement)).where(and_(*conditions))
    for item in statement.order_by:
        expression = _column(item.column)
        query = query.order_by(expression.desc() if item.descending else expression.asc())
    if statement.limit is not None:
        query = query.limit(statement.limit)
    return query


def render_update(statement: UpdateStatement, target_ids: list[str], now: datetime):
    """Phase two of an UPDATE: the write itself, still owner-scoped."""
    table = table_for(statement.table)
    values = {
        a.column: literal_value(column_kind(statement.table, a.column), a.value, a.column, now)
        for a in statement.assignments
    }
    values["updatedAt"] = now
    return (
        update(table)
        .where(table.c.id.in_(target_ids), _owner_scope(statement.table, statement.owner_id))
        .values(**values)
    )


# =============================================================================
# EXECUTOR
# =============================================================================

def failed_outcome(
    index: int,
    statement: Optional[Statement],
    error: GatewayError,
    kind: Optional[StatementKind] = None,
) -> StatementOutcome:
    """Turn a gateway error for one statement into its outcome."""
    if isinstance(error, ExecutionFailure):
        status = OutcomeStatus.FAILED
    else:
        status = OutcomeStatus.REJECTED
    if kind is None:
        kind = statement.kind if statement is not None else StatementKind.UNSUPPORTED
    table = getattr(statement, "table", None)
    return StatementOutcome(
        index=index,
        kind=kind,
        table=table,
        status=status,
        message=error.message,
        error_type=error.error_code,
        statement=statement,
    )


async def _numbered(statements) -> AsyncIterator[tuple[int, Statement]]:
    if hasattr(statements, "__aiter__"):
        async for pair in statements:
            yield pair
    else:
        for pair in enumerate(statements):
            yield pair


class StatementExecutor:
    """
    Runs rewritten statements against the ledger store.

    GUARANTEES:
    - Every SELECT and UPDATE carries `books.userId = :owner`
    - One transaction per statement
    - Store errors surface verbatim as ExecutionFailure
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        max_select_rows: int = 50,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._store = store
        self._max_rows = max_select_rows
        self._clock = clock

    async def execute(self, index: int, statement: Statement) -> StatementOutcome:
        """
        Execute one statement.

        Raises:
            ExecutionFailure: the store rejected it
            ValidationError: the statement is not executable (unscoped,
                unsupported)
        """
        if isinstance(statement, UnsupportedStatement):
            raise ValidationError(
                f"Unsupported statement type '{statement.verb or '?'}'",
                field="statement",
                value=statement.verb,
            )

        now = self._clock()
        try:
            async with self._store.transaction() as tx:
                if isinstance(statement, InsertStatement):
                    outcome = await self._insert(tx, index, statement, now)
                elif isinstance(statement, UpdateStatement):
                    outcome = await self._update(tx, index, statement, now)
                else:
                    outcome = await self._select(tx, index, statement, now)
        except StorageError as e:
            logger.warning("statement_failed", index=index, error=str(e))
            raise ExecutionFailure(str(e)) from e

        logger.info(
            "statement_executed",
            index=index,
            kind=statement.kind.value,
            table=statement.table.value,
            row_count=outcome.row_count,
        )
        return outcome

    async def execute_all(
        self,
        statements: Union[Iterable[Statement], AsyncIterable[tuple[int, Statement]]],
        on_outcome: Optional[Callable[[Statement, StatementOutcome], Awaitable[None]]] = None,
    ) -> list[StatementOutcome]:
        """
        Execute statements in order, each in its own transaction. A failure
        is recorded as that statement's outcome and the remaining statements
        still run.

        Args:
            statements: a list (positions 0..n-1), or an async iterable of
                (position, statement) pairs. The iterable is only advanced
                after the previous statement has finished, so the caller can
                prepare each statement against the state the earlier ones left.
            on_outcome: awaited with each statement and its outcome
        """
        outcomes = []
        async for index, statement in _numbered(statements):
            try:
                outcome = await self.execute(index, statement)
            except GatewayError as e:
                outcome = failed_outcome(index, statement, e)
            outcomes.append(outcome)
            if on_outcome is not None:
                await on_outcome(statement, outcome)
        return outcomes

    async def _insert(self, tx: LedgerTransaction, index: int, statement: InsertStatement, now: datetime):
        if statement.table == Entity.BOOKS and statement.value_of("userId") is None:
            raise ValidationError("Book insert is not scoped to the requesting user", field="userId")
        result = await tx.execute_write(render_insert(statement, now))
        return StatementOutcome(
            index=index,
            kind=StatementKind.INSERT,
            table=statement.table,
            status=OutcomeStatus.SUCCESS,
            row_count=result.row_count,
            inserted_id=result.inserted_id,
            statement=statement,
        )

    async def _update(self, tx: LedgerTransaction, index: int, statement: UpdateStatement, now: datetime):
        targets = await tx.fetch_rows(render_update_targets(statement, now))
        target_ids = [row["id"] for row in targets]
        row_count = 0
        if target_ids:
            result = await tx.execute_write(render_update(statement, target_ids, now))
            row_count = result.row_count
        return StatementOutcome(
            index=index,
            kind=StatementKind.UPDATE,
            table=statement.table,
            status=OutcomeStatus.SUCCESS,
            row_count=row_count,
            statement=statement,
        )

    async def _select(self, tx: LedgerTransaction, index: int, statement: SelectStatement, now: datetime):
        rows = await tx.fetch_rows(render_select(statement, now, self._max_rows))
        return StatementOutcome(
            index=index,
            kind=StatementKind.SELECT,
            table=statement.table,
            status=OutcomeStatus.SUCCESS,
            row_count=len(rows),
            rows=rows,
            statement=statement,
        )
