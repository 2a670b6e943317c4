"""
Statement Intermediate Representation

Generated SQL is parsed ONCE into these models. Every later stage
(validation, tenant rewriting, currency normalization, execution,
formatting) works on the IR and never re-reads the model's raw text.
The IR is rendered back to SQL only inside the executor.

DESIGN DECISION: The set of statement variants is closed. A statement is
exactly one of InsertStatement, UpdateStatement, SelectStatement or
UnsupportedStatement, decided at the classifier boundary.
"""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS
# =============================================================================

class StatementKind(str, Enum):
    """Leading-verb classification of a candidate statement."""
    INSERT = "insert"
    UPDATE = "update"
    SELECT = "select"
    UNSUPPORTED = "unsupported"


class Entity(str, Enum):
    """Tables a generated statement may target."""
    BOOKS = "books"
    CATEGORIES = "categories"
    EXPENSES = "expenses"

    @property
    def singular(self) -> str:
        return {
            Entity.BOOKS: "book",
            Entity.CATEGORIES: "category",
            Entity.EXPENSES: "expense",
        }[self]


class LiteralKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    FUNCTION = "function"  # UUID(), NOW(), CURDATE() ...


# =============================================================================
# LEAF NODES
# =============================================================================

class SqlLiteral(BaseModel):
    """
    A literal value from the generated text.

    Numbers keep their source text so no precision is lost before the
    validator coerces them to Decimal.
    """
    model_config = ConfigDict(frozen=True)

    kind: LiteralKind
    value: Optional[str] = None

    @property
    def is_function(self) -> bool:
        return self.kind == LiteralKind.FUNCTION

    @classmethod
    def string(cls, value: str) -> "SqlLiteral":
        return cls(kind=LiteralKind.STRING, value=value)

    @classmethod
    def number(cls, value) -> "SqlLiteral":
        return cls(kind=LiteralKind.NUMBER, value=str(value))

    @classmethod
    def boolean(cls, value: bool) -> "SqlLiteral":
        return cls(kind=LiteralKind.BOOLEAN, value="true" if value else "false")

    @classmethod
    def function(cls, name: str) -> "SqlLiteral":
        return cls(kind=LiteralKind.FUNCTION, value=name.upper())

    @classmethod
    def null(cls) -> "SqlLiteral":
        return cls(kind=LiteralKind.NULL)


class ColumnRef(BaseModel):
    """A column resolved to its canonical table."""
    model_config = ConfigDict(frozen=True)

    table: Entity
    column: str

    @property
    def qualified(self) -> str:
        return f"{self.table.value}.{self.column}"


class Comparison(BaseModel):
    """
    One filter comparison: column <operator> literal(s).

    Operators: = != <> < <= > >= LIKE, NOT LIKE, IN, NOT IN, BETWEEN,
    IS NULL, IS NOT NULL.

    `function` wraps the column side: DATE, YEAR, MONTH, LOWER or UPPER.
    """
    model_config = ConfigDict(frozen=True)

    column: ColumnRef
    operator: str
    values: tuple[SqlLiteral, ...] = ()
    function: Optional[str] = None


class BoolGroup(BaseModel):
    """AND / OR combination of predicates."""
    model_config = ConfigDict(frozen=True)

    operator: str = Field(..., pattern="^(AND|OR)$")
    items: tuple["Predicate", ...]


Predicate = Union[Comparison, BoolGroup]
BoolGroup.model_rebuild()


class Projection(BaseModel):
    """
    One item of a SELECT list.

    kind:
    - column: a single column
    - star: every column of star_table (or of the base table when None)
    - aggregate: function over column (or over * when column is None)
    """
    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., pattern="^(column|star|aggregate)$")
    column: Optional[ColumnRef] = None
    star_table: Optional[Entity] = None
    function: Optional[str] = None
    label: Optional[str] = None


class OrderItem(BaseModel):
    """ORDER BY item: a column, an aggregate over a column, or a projection label."""
    model_config = ConfigDict(frozen=True)

    column: Optional[ColumnRef] = None
    function: Optional[str] = None
    label: Optional[str] = None
    descending: bool = False


class Join(BaseModel):
    """An inner join on an equality between two columns."""
    model_config = ConfigDict(frozen=True)

    table: Entity
    left: ColumnRef
    right: ColumnRef


class Assignment(BaseModel):
    """One `column = literal` item of an UPDATE SET list."""
    model_config = ConfigDict(frozen=True)

    column: str
    value: SqlLiteral


# =============================================================================
# STATEMENT VARIANTS
# =============================================================================

class InsertStatement(BaseModel):
    """INSERT INTO <table> (columns) VALUES (literals)."""
    model_config = ConfigDict(frozen=True)

    kind: StatementKind = StatementKind.INSERT
    table: Entity
    values: dict[str, SqlLiteral]
    source: str = ""

    def value_of(self, column: str) -> Optional[SqlLiteral]:
        return self.values.get(column)


class UpdateStatement(BaseModel):
    """UPDATE <table> SET assignments [WHERE ...] [ORDER BY ...] [LIMIT n]."""
    model_config = ConfigDict(frozen=True)

    kind: StatementKind = StatementKind.UPDATE
    table: Entity
    assignments: tuple[Assignment, ...]
    where: Optional[Predicate] = None
    order_by: tuple[OrderItem, ...] = ()
    limit: Optional[int] = None
    joins: tuple[Join, ...] = ()
    owner_id: Optional[str] = None
    repairs: tuple[str, ...] = ()
    source: str = ""

    @property
    def assigned_fields(self) -> set[str]:
        return {a.column for a in self.assignments}


class SelectStatement(BaseModel):
    """SELECT projections FROM <table> [joins] [WHERE] [GROUP BY] [ORDER BY] [LIMIT]."""
    model_config = ConfigDict(frozen=True)

    kind: StatementKind = StatementKind.SELECT
    table: Entity
    projections: tuple[Projection, ...]
    distinct: bool = False
    joins: tuple[Join, ...] = ()
    where: Optional[Predicate] = None
    group_by: tuple[ColumnRef, ...] = ()
    order_by: tuple[OrderItem, ...] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None
    owner_id: Optional[str] = None
    repairs: tuple[str, ...] = ()
    source: str = ""

    @property
    def is_aggregate(self) -> bool:
        return any(p.kind == "aggregate" for p in self.projections)


class UnsupportedStatement(BaseModel):
    """Anything whose leading verb is not INSERT, UPDATE or SELECT."""
    model_config = ConfigDict(frozen=True)

    kind: StatementKind = StatementKind.UNSUPPORTED
    verb: str
    source: str = ""


Statement = Union[InsertStatement, UpdateStatement, SelectStatement, UnsupportedStatement]


def iter_comparisons(predicate: Optional[Predicate]):
    """Yield every Comparison in a predicate tree, depth first."""
    if predicate is None:
        return
    if isinstance(predicate, Comparison):
        yield predicate
        return
    for item in predicate.items:
        yield from iter_comparisons(item)
