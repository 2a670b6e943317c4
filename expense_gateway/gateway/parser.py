"""
Statement Parser

Turns one screened statement into the IR, exactly once.

DESIGN DECISION: The grammar is deliberately small. It covers the
single-table INSERT, the filtered UPDATE and the chain-joined SELECT the
model is prompted to write. Anything outside it is a ValidationError,
never a best-effort guess.

Repairs performed here (recorded on the statement):
- a dangling AND / OR at the end of a filter is dropped
- an empty WHERE is dropped
- a constant tautology (1 = 1) is dropped
Join conditions written by the model (in ON or in WHERE) are discarded
because the rewriter rebuilds the ownership chain itself.
"""

from typing import Optional

import structlog

from expense_gateway.gateway.classifier import classify_tokens
from expense_gateway.gateway.errors import ValidationError
from expense_gateway.gateway.lexer import LexerError, Token, TokenType, tokenize
from expense_gateway.models.statements import (
    Assignment,
    BoolGroup,
    ColumnRef,
    Comparison,
    Entity,
    InsertStatement,
    OrderItem,
    Predicate,
    Projection,
    SelectStatement,
    SqlLiteral,
    Statement,
    StatementKind,
    UnsupportedStatement,
    UpdateStatement,
)
from expense_gateway.services.storage.schema import (
    OWNERSHIP_CHAIN,
    canonical_column,
    resolve_entity,
)


logger = structlog.get_logger(__name__)


AGGREGATE_FUNCTIONS = frozenset({"SUM", "COUNT", "AVG", "MIN", "MAX"})
COLUMN_FUNCTIONS = frozenset({"DATE", "YEAR", "MONTH", "LOWER", "UPPER"})

# Values the gateway computes itself at execution time
GATEWAY_FUNCTIONS = {
    "UUID": "UUID",
    "NOW": "NOW",
    "CURRENT_TIMESTAMP": "NOW",
    "CURDATE": "CURDATE",
    "CURRENT_DATE": "CURDATE",
}
DATE_PART_FUNCTIONS = frozenset({"YEAR", "MONTH", "DATE"})

_COMPARISON_OPERATORS = {"=": "=", "!=": "!=", "<>": "!=", "<": "<", "<=": "<=", ">": ">", ">=": ">="}

_JOIN_WORDS = frozenset({"JOIN", "INNER", "LEFT", "RIGHT", "CROSS", "STRAIGHT_JOIN"})
_TAIL_WORDS = frozenset({"WHERE", "GROUP", "ORDER", "LIMIT", "HAVING", "OFFSET", "SET"})

RESERVED = frozenset({
    "SELECT", "INSERT", "UPDATE", "FROM", "INTO", "VALUES", "VALUE", "SET",
    "AS", "ON", "AND", "OR", "NOT", "IN", "LIKE", "BETWEEN", "IS", "NULL",
    "TRUE", "FALSE", "ASC", "DESC", "BY", "DISTINCT", "OUTER",
}) | _JOIN_WORDS | _TAIL_WORDS

# Equalities that merely restate the ownership chain
_CHAIN_LINKS = (
    frozenset({("expenses", "categoryId"), ("categories", "id")}),
    frozenset({("categories", "bookId"), ("books", "id")}),
)


class _Parser:
    """Recursive-descent parser over the lexer's tokens."""

    def __init__(self, text: str, tokens: list[Token]):
        self.text = text
        self.tokens = tokens
        self.pos = 0
        self.end = len(tokens)
        if tokens and tokens[-1].is_punct(";"):
            self.end -= 1
        self.base: Optional[Entity] = None
        self.aliases: dict[str, Entity] = {}
        self.repairs: list[str] = []

    # ------------------------------------------------------------------
    # Token helpers
    # ------------------------------------------------------------------

    def error(self, message: str, field: Optional[str] = None, value=None) -> ValidationError:
        return ValidationError(message, field=field, value=value)

    def peek(self, offset: int = 0) -> Optional[Token]:
        index = self.pos + offset
        return self.tokens[index] if index < self.end else None

    def at_end(self) -> bool:
        return self.pos >= self.end

    def advance(self) -> Token:
        token = self.peek()
        if token is None:
            raise self.error("Statement ends unexpectedly")
        self.pos += 1
        return token

    def accept_word(self, *words: str) -> Optional[Token]:
        token = self.peek()
        if token is not None and token.is_word(*words):
            self.pos += 1
            return token
        return None

    def expect_word(self, *words: str) -> Token:
        token = self.accept_word(*words)
        if token is None:
            raise self.error(f"Expected {' or '.join(words)} near {self._near()}")
        return token

    def accept_punct(self, char: str) -> bool:
        token = self.peek()
        if token is not None and token.is_punct(char):
            self.pos += 1
            return True
        return False

    def expect_punct(self, char: str) -> None:
        if not self.accept_punct(char):
            raise self.error(f"Expected '{char}' near {self._near()}")

    def expect_end(self) -> None:
        if not self.at_end():
            raise self.error(f"Unexpected {self._near()}")

    def _near(self) -> str:
        token = self.peek()
        return f"'{token.text}'" if token else "end of statement"

    def _is_identifier(self, token: Optional[Token]) -> bool:
        if token is None:
            return False
        if token.type == TokenType.QUOTED_IDENT:
            return True
        return token.type == TokenType.WORD and token.upper not in RESERVED

    def identifier(self) -> str:
        token = self.peek()
        if not self._is_identifier(token):
            raise self.error(f"Expected a name near {self._near()}")
        self.pos += 1
        return token.value

    def at_boundary(self) -> bool:
        token = self.peek()
        if token is None:
            return True
        return token.is_punct(")") or token.is_word("GROUP", "ORDER", "LIMIT", "HAVING")

    # ------------------------------------------------------------------
    # Tables and columns
    # ------------------------------------------------------------------

    def table_ref(self, allow_alias: bool = True) -> Entity:
        name = self.identifier()
        if self.accept_punct("."):
            # schema-qualified: db.expenses
            name = self.identifier()
        entity = resolve_entity(name)
        if entity is None:
            raise self.error(f"Unknown table '{name}'", field="table", value=name)

        if self.base is not None and entity not in OWNERSHIP_CHAIN[self.base]:
            raise self.error(
                f"Table '{entity.value}' cannot be combined with '{self.base.value}'",
                field="table",
                value=entity.value,
            )

        self.aliases[entity.value] = entity
        if allow_alias:
            self.accept_word("AS")
            if self._is_identifier(self.peek()):
                alias = self.identifier()
                self.aliases[alias.lower()] = entity
        return entity

    def column_ref(self) -> ColumnRef:
        first = self.identifier()
        if self.accept_punct("."):
            column_name = self.identifier()
            entity = self.aliases.get(first.lower())
            if entity is None:
                raise self.error(f"Unknown table or alias '{first}'", field=first, value=first)
            column = canonical_column(entity, column_name)
            if column is None:
                raise self.error(
                    f"Unknown column '{column_name}' on {entity.value}",
                    field=column_name,
                    value=column_name,
                )
            return ColumnRef(table=entity, column=column)

        for entity in OWNERSHIP_CHAIN[self.base]:
            column = canonical_column(entity, first)
            if column is not None:
                return ColumnRef(table=entity, column=column)
        raise self.error(f"Unknown column '{first}'", field=first, value=first)

    def _qualified_star(self) -> Optional[Entity]:
        """Consume `alias.*` and return its entity, or None without consuming."""
        first, dot, star = self.peek(), self.peek(1), self.peek(2)
        if self._is_identifier(first) and dot is not None and dot.is_punct(".") \
                and star is not None and star.is_punct("*"):
            entity = self.aliases.get(first.value.lower())
            if entity is None:
                raise self.error(f"Unknown table or alias '{first.value}'", field=first.value)
            self.pos += 3
            return entity
        return None

    # ------------------------------------------------------------------
    # Literals
    # ------------------------------------------------------------------

    def _starts_literal(self) -> bool:
        token = self.peek()
        if token is None:
            return False
        if token.type in (TokenType.STRING, TokenType.NUMBER):
            return True
        if token.is_punct("-", "+"):
            return True
        if token.is_word("TRUE", "FALSE", "NULL") or token.upper in GATEWAY_FUNCTIONS:
            return token.type == TokenType.WORD
        if token.type == TokenType.WORD and token.upper in DATE_PART_FUNCTIONS:
            after, inner = self.peek(1), self.peek(2)
            return after is not None and after.is_punct("(") \
                and inner is not None and inner.upper in GATEWAY_FUNCTIONS
        return False

    def _gateway_function(self) -> str:
        name = GATEWAY_FUNCTIONS[self.advance().upper]
        if self.accept_punct("("):
            self.expect_punct(")")
        return name

    def literal(self) -> SqlLiteral:
        token = self.peek()
        if token is None:
            raise self.error("Expected a value at end of statement")

        if token.type == TokenType.STRING:
            self.pos += 1
            return SqlLiteral.string(token.value)

        if token.is_punct("-", "+"):
            sign = "-" if token.text == "-" else ""
            self.pos += 1
            number = self.peek()
            if number is None or number.type != TokenType.NUMBER:
                raise self.error(f"Expected a number near {self._near()}")
            self.pos += 1
            return SqlLiteral.number(sign + number.value)

        if token.type == TokenType.NUMBER:
            self.pos += 1
            return SqlLiteral.number(token.value)

        if token.is_word("TRUE", "FALSE"):
            self.pos += 1
            return SqlLiteral.boolean(token.upper == "TRUE")

        if token.is_word("NULL"):
            self.pos += 1
            return SqlLiteral.null()

        if token.type == TokenType.WORD and token.upper in GATEWAY_FUNCTIONS:
            return SqlLiteral.function(self._gateway_function())

        if token.type == TokenType.WORD and token.upper in DATE_PART_FUNCTIONS and self._starts_literal():
            part = self.advance().upper
            self.expect_punct("(")
            inner = self._gateway_function()
            self.expect_punct(")")
            return SqlLiteral.function(f"{part}({inner})")

        raise self.error(f"Expected a literal value near {self._near()}", value=token.text)

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def where_clause(self) -> Optional[Predicate]:
        if not self.accept_word("WHERE"):
            return None
        if self.at_boundary():
            self._repair("removed empty WHERE")
            return None
        leading = self.accept_word("AND", "OR")
        if leading is not None:
            self._repair(f"removed leading {leading.upper}")
        return self.predicate()

    def predicate(self) -> Optional[Predicate]:
        items = [self.conjunction()]
        while self.accept_word("OR"):
            if self.at_boundary():
                self._repair("removed dangling OR")
                break
            items.append(self.conjunction())
        return _group("OR", items)

    def conjunction(self) -> Optional[Predicate]:
        items = [self.primary()]
        while self.accept_word("AND"):
            if self.at_boundary():
                self._repair("removed dangling AND")
                break
            items.append(self.primary())
        return _group("AND", items)

    def primary(self) -> Optional[Predicate]:
        if self.accept_punct("("):
            inner = self.predicate()
            self.expect_punct(")")
            return inner
        if self.peek() is not None and self.peek().is_word("NOT"):
            raise self.error("NOT (...) filters are not supported")
        return self.comparison()

    def comparison(self) -> Optional[Comparison]:
        if self._starts_literal():
            return self._constant_condition()

        function = None
        token, after = self.peek(), self.peek(1)
        if token is not None and token.type == TokenType.WORD and token.upper in COLUMN_FUNCTIONS \
                and after is not None and after.is_punct("("):
            function = self.advance().upper
            self.expect_punct("(")
            column = self.column_ref()
            self.expect_punct(")")
        else:
            column = self.column_ref()

        token = self.peek()
        if token is None:
            raise self.error(f"Incomplete condition on '{column.column}'", field=column.column)

        if token.type == TokenType.OPERATOR:
            self.pos += 1
            operator = _COMPARISON_OPERATORS[token.text]
            if not self._starts_literal():
                other = self.column_ref()
                if operator == "=" and function is None and _is_chain_link(column, other):
                    return None
                raise self.error(
                    "Comparing two columns is not supported",
                    field=column.column,
                    value=other.qualified,
                )
            return Comparison(column=column, operator=operator, values=(self.literal(),), function=function)

        if self.accept_word("IS"):
            negated = self.accept_word("NOT") is not None
            self.expect_word("NULL")
            operator = "IS NOT NULL" if negated else "IS NULL"
            return Comparison(column=column, operator=operator, function=function)

        negated = self.accept_word("NOT") is not None

        if self.accept_word("LIKE"):
            operator = "NOT LIKE" if negated else "LIKE"
            return Comparison(column=column, operator=operator, values=(self.literal(),), function=function)

        if self.accept_word("IN"):
            self.expect_punct("(")
            if self.peek() is not None and self.peek().is_word("SELECT"):
                raise self.error("Subqueries are not supported", field=column.column)
            values = [self.literal()]
            while self.accept_punct(","):
                values.append(self.literal())
            self.expect_punct(")")
            operator = "NOT IN" if negated else "IN"
            return Comparison(column=column, operator=operator, values=tuple(values), function=function)

        if not negated and self.accept_word("BETWEEN"):
            low = self.literal()
            self.expect_word("AND")
            high = self.literal()
            return Comparison(column=column, operator="BETWEEN", values=(low, high), function=function)

        raise self.error(f"Unsupported condition near {self._near()}", field=column.column)

    def _constant_condition(self) -> None:
        left = self.literal()
        token = self.peek()
        if token is not None and token.type == TokenType.OPERATOR and token.text == "=":
            self.pos += 1
            right = self.literal()
            if left == right:
                self._repair("removed constant condition")
                return None
        raise self.error("Only column conditions are supported", value=left.value)

    def _repair(self, what: str) -> None:
        self.repairs.append(what)
        logger.info("statement_repaired", repair=what, statement=self.text[:200])

    # ------------------------------------------------------------------
    # Clauses shared by SELECT and UPDATE
    # ------------------------------------------------------------------

    def join_clauses(self) -> None:
        """Register joined tables; their ON conditions are skipped."""
        while True:
            if self.accept_punct(","):
                self.table_ref()
                continue
            token = self.peek()
            if token is None or not token.is_word(*_JOIN_WORDS):
                return
            if not self.accept_word("JOIN", "STRAIGHT_JOIN"):
                self.advance()
                self.accept_word("OUTER")
                self.expect_word("JOIN")
            self.table_ref()
            if self.accept_word("ON"):
                self._skip_condition()

    def _skip_condition(self) -> None:
        depth = 0
        while not self.at_end():
            token = self.peek()
            if depth == 0 and (token.is_word(*_JOIN_WORDS) or token.is_word(*_TAIL_WORDS)):
                return
            if depth == 0 and token.is_punct(","):
                return
            if token.is_punct("("):
                depth += 1
            elif token.is_punct(")"):
                depth -= 1
            self.pos += 1

    def order_by(self, projections: tuple[Projection, ...] = ()) -> tuple[OrderItem, ...]:
        if not self.accept_word("ORDER"):
            return ()
        self.expect_word("BY")
        labels = {p.label.lower(): p.label for p in projections if p.label}
        items = []
        while True:
            token, after = self.peek(), self.peek(1)
            if token is not None and token.upper in AGGREGATE_FUNCTIONS and after is not None and after.is_punct("("):
                function = self.advance().upper
                self.expect_punct("(")
                column = None if self.accept_punct("*") else self.column_ref()
                self.expect_punct(")")
                item = {"function": function, "column": column}
            elif token is not None and self._is_identifier(token) and token.value.lower() in labels \
                    and not (after is not None and after.is_punct(".")):
                self.pos += 1
                item = {"label": labels[token.value.lower()]}
            else:
                item = {"column": self.column_ref()}
            descending = False
            direction = self.accept_word("ASC", "DESC")
            if direction is not None:
                descending = direction.upper == "DESC"
            items.append(OrderItem(descending=descending, **item))
            if not self.accept_punct(","):
                return tuple(items)

    def limit_clause(self) -> tuple[Optional[int], Optional[int]]:
        if not self.accept_word("LIMIT"):
            return None, None
        first = self._integer()
        if self.accept_punct(","):
            return self._integer(), first
        if self.accept_word("OFFSET"):
            return first, self._integer()
        return first, None

    def _integer(self) -> int:
        token = self.peek()
        if token is None or token.type != TokenType.NUMBER or "." in token.text:
            raise self.error(f"Expected a whole number near {self._near()}", field="LIMIT")
        self.pos += 1
        return int(token.text)

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def parse_insert(self) -> InsertStatement:
        self.expect_word("INSERT")
        self.expect_word("INTO")
        table = self.table_ref(allow_alias=False)
        self.base = table

        self.expect_punct("(")
        columns = []
        while True:
            name = self.identifier()
            column = canonical_column(table, name)
            if column is None:
                raise self.error(f"Unknown column '{name}' on {table.value}", field=name, value=name)
            if column in columns:
                raise self.error(f"Column '{column}' listed twice", field=column)
            columns.append(column)
            if not self.accept_punct(","):
                break
        self.expect_punct(")")

        self.expect_word("VALUES", "VALUE")
        self.expect_punct("(")
        values = [self.literal()]
        while self.accept_punct(","):
            values.append(self.literal())
        self.expect_punct(")")

        if self.accept_punct(","):
            raise self.error("Only one row per INSERT is supported")
        self.expect_end()

        if len(columns) != len(values):
            raise self.error(
                f"INSERT lists {len(columns)} columns but {len(values)} values",
                field="values",
            )
        return InsertStatement(table=table, values=dict(zip(columns, values)), source=self.text)

    def parse_update(self) -> UpdateStatement:
        self.expect_word("UPDATE")
        table = self.table_ref()
        self.base = table
        self.join_clauses()
        self.expect_word("SET")

        assignments = []
        while True:
            column = self.column_ref()
            if column.table != table:
                raise self.error(
                    f"Only columns of {table.value} can be assigned",
                    field=column.column,
                    value=column.qualified,
                )
            token = self.advance()
            if not (token.type == TokenType.OPERATOR and token.text == "="):
                raise self.error(f"Expected '=' after '{column.column}'", field=column.column)
            if not self._starts_literal():
                raise self.error(
                    f"Only literal values can be assigned to '{column.column}'",
                    field=column.column,
                )
            assignments.append(Assignment(column=column.column, value=self.literal()))
            if not self.accept_punct(","):
                break

        where = self.where_clause()
        order = self.order_by()
        limit, offset = self.limit_clause()
        if offset is not None:
            raise self.error("OFFSET is not supported in UPDATE", field="OFFSET")
        self.expect_end()

        return UpdateStatement(
            table=table,
            assignments=tuple(assignments),
            where=where,
            order_by=order,
            limit=limit,
            repairs=tuple(self.repairs),
            source=self.text,
        )

    def parse_select(self) -> SelectStatement:
        self.expect_word("SELECT")
        distinct = self.accept_word("DISTINCT") is not None
        projection_start = self.pos

        from_index = self._find_top_level("FROM")
        if from_index is None:
            raise self.error("SELECT without FROM is not supported")

        # FROM and JOIN first so aliases are known for the projection list
        self.pos = from_index + 1
        self.base = self.table_ref()
        self.join_clauses()
        tail_start = self.pos

        self.pos, self.end, saved_end = projection_start, from_index, self.end
        projections = self._projections()
        self.expect_end()
        self.pos, self.end = tail_start, saved_end

        where = self.where_clause()
        group_by = self._group_by(projections)
        if self.peek() is not None and self.peek().is_word("HAVING"):
            raise self.error("HAVING is not supported")
        order = self.order_by(projections)
        limit, offset = self.limit_clause()
        self.expect_end()

        return SelectStatement(
            table=self.base,
            projections=projections,
            distinct=distinct,
            where=where,
            group_by=group_by,
            order_by=order,
            limit=limit,
            offset=offset,
            repairs=tuple(self.repairs),
            source=self.text,
        )

    def _find_top_level(self, word: str) -> Optional[int]:
        depth = 0
        for index in range(self.pos, self.end):
            token = self.tokens[index]
            if token.is_punct("("):
                depth += 1
            elif token.is_punct(")"):
                depth -= 1
            elif depth == 0 and token.is_word(word):
                return index
        return None

    def _projections(self) -> tuple[Projection, ...]:
        items = []
        while True:
            items.append(self._projection())
            if not self.accept_punct(","):
                return tuple(items)

    def _projection(self) -> Projection:
        if self.accept_punct("*"):
            return Projection(kind="star")

        star_table = self._qualified_star()
        if star_table is not None:
            return Projection(kind="star", star_table=star_table)

        token, after = self.peek(), self.peek(1)
        if token is not None and token.upper in AGGREGATE_FUNCTIONS and after is not None and after.is_punct("("):
            function = self.advance().upper
            self.expect_punct("(")
            if self.peek() is not None and self.peek().is_word("DISTINCT"):
                raise self.error(f"{function}(DISTINCT ...) is not supported")
            column = None if self.accept_punct("*") else self.column_ref()
            self.expect_punct(")")
            return Projection(kind="aggregate", function=function, column=column, label=self._label())

        column = self.column_ref()
        return Projection(kind="column", column=column, label=self._label())

    def _label(self) -> Optional[str]:
        if self.accept_word("AS"):
            token = self.advance()
            if token.type in (TokenType.WORD, TokenType.QUOTED_IDENT, TokenType.STRING):
                return token.value
            raise self.error(f"Expected a label after AS, got '{token.text}'")
        if self._is_identifier(self.peek()):
            return self.identifier()
        return None

    def _group_by(self, projections: tuple[Projection, ...]) -> tuple[ColumnRef, ...]:
        if not self.accept_word("GROUP"):
            return ()
        self.expect_word("BY")
        by_label = {p.label.lower(): p.column for p in projections if p.label and p.kind == "column"}
        columns = []
        while True:
            token, after = self.peek(), self.peek(1)
            if self._is_identifier(token) and token.value.lower() in by_label \
                    and not (after is not None and after.is_punct(".")):
                self.pos += 1
                columns.append(by_label[token.value.lower()])
            else:
                columns.append(self.column_ref())
            if not self.accept_punct(","):
                return tuple(columns)


def _group(operator: str, items: list[Optional[Predicate]]) -> Optional[Predicate]:
    kept = [item for item in items if item is not None]
    if not kept:
        return None
    if len(kept) == 1:
        return kept[0]
    return BoolGroup(operator=operator, items=tuple(kept))


def _is_chain_link(left: ColumnRef, right: ColumnRef) -> bool:
    pair = frozenset({(left.table.value, left.column), (right.table.value, right.column)})
    return pair in _CHAIN_LINKS


def parse_statement(text: str) -> Statement:
    """
    Parse a screened statement into its IR variant.

    Raises:
        ValidationError: unknown table or column, or text outside the
            supported grammar
    """
    try:
        tokens = tokenize(text)
    except LexerError as e:
        raise ValidationError(str(e)) from e

    kind = classify_tokens(tokens)
    if kind == StatementKind.UNSUPPORTED:
        verb = tokens[0].text.upper() if tokens else ""
        return UnsupportedStatement(verb=verb, source=text)

    parser = _Parser(text, tokens)
    if kind == StatementKind.INSERT:
        return parser.parse_insert()
    if kind == StatementKind.UPDATE:
        return parser.parse_update()
    return parser.parse_select()
