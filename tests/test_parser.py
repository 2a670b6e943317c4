"""
Tests for the statement parser.

The parser runs on screened text and produces the IR exactly once.
"""

import pytest

from expense_gateway.gateway.errors import ValidationError
from expense_gateway.gateway.parser import parse_statement
from expense_gateway.models.statements import (
    BoolGroup,
    ColumnRef,
    Comparison,
    Entity,
    InsertStatement,
    LiteralKind,
    SelectStatement,
    SqlLiteral,
    UnsupportedStatement,
    UpdateStatement,
)


class TestParseInsert:
    """Single-row INSERT into one of the three tables."""

    def test_expense_insert(self):
        statement = parse_statement(
            "INSERT INTO expenses (amount, description, category_id, date, payment_method) "
            "VALUES (40.00, 'Electricity bill', 'Bills & Utilities', CURDATE(), 'Other')"
        )
        assert isinstance(statement, InsertStatement)
        assert statement.table == Entity.EXPENSES
        assert statement.value_of("amount") == SqlLiteral.number("40.00")
        assert statement.value_of("categoryId").value == "Bills & Utilities"
        assert statement.value_of("paymentMethod").value == "Other"
        assert statement.value_of("date") == SqlLiteral.function("CURDATE")

    def test_column_names_are_canonical(self):
        """Test case and underscores are ignored when resolving columns."""
        statement = parse_statement("INSERT INTO categories (NAME, BOOK_ID) VALUES ('Food', 'b1')")
        assert set(statement.values) == {"name", "bookId"}

    def test_literal_kinds(self):
        statement = parse_statement(
            "INSERT INTO books (id, name, currency, description, isArchived) "
            "VALUES (UUID(), 'Trip', 'EUR', NULL, FALSE)"
        )
        assert statement.value_of("id").kind == LiteralKind.FUNCTION
        assert statement.value_of("description").kind == LiteralKind.NULL
        assert statement.value_of("isArchived") == SqlLiteral.boolean(False)

    def test_negative_number(self):
        statement = parse_statement("INSERT INTO expenses (amount, categoryId) VALUES (-5, 'x')")
        assert statement.value_of("amount").value == "-5"

    def test_escaped_quote(self):
        statement = parse_statement("INSERT INTO categories (name, bookId) VALUES ('Kid''s stuff', 'b1')")
        assert statement.value_of("name").value == "Kid's stuff"

    def test_column_count_mismatch(self):
        with pytest.raises(ValidationError, match="2 columns but 1 values"):
            parse_statement("INSERT INTO books (name, currency) VALUES ('Trip')")

    def test_multi_row_insert_is_refused(self):
        with pytest.raises(ValidationError, match="one row"):
            parse_statement("INSERT INTO books (name, currency) VALUES ('A', 'USD'), ('B', 'EUR')")

    def test_unknown_table_and_column(self):
        with pytest.raises(ValidationError, match="Unknown table"):
            parse_statement("INSERT INTO users (email) VALUES ('x@example.com')")
        with pytest.raises(ValidationError, match="Unknown column"):
            parse_statement("INSERT INTO books (owner) VALUES ('x')")


class TestParseUpdate:
    """Filtered UPDATE of base-table columns."""

    def test_update_with_filter_and_limit(self):
        statement = parse_statement(
            "UPDATE expenses SET amount = 45.5, description = 'Power' "
            "WHERE description = 'Electricity' ORDER BY date DESC LIMIT 1"
        )
        assert isinstance(statement, UpdateStatement)
        assert statement.assigned_fields == {"amount", "description"}
        assert statement.where == Comparison(
            column=ColumnRef(table=Entity.EXPENSES, column="description"),
            operator="=",
            values=(SqlLiteral.string("Electricity"),),
        )
        assert statement.limit == 1
        assert statement.order_by[0].descending

    def test_update_through_joins(self):
        """Test a joined UPDATE filters on a chain column."""
        statement = parse_statement(
            "UPDATE expenses e JOIN categories c ON e.categoryId = c.id "
            "JOIN books b ON c.bookId = b.id "
            "SET e.paymentMethod = 'Cash' WHERE b.name = 'House'"
        )
        assert statement.where.column == ColumnRef(table=Entity.BOOKS, column="name")

    def test_only_base_columns_can_be_assigned(self):
        with pytest.raises(ValidationError, match="Only columns of expenses"):
            parse_statement(
                "UPDATE expenses e JOIN categories c ON e.categoryId = c.id "
                "SET c.name = 'x' WHERE e.amount = 1"
            )

    def test_assignment_must_be_literal(self):
        with pytest.raises(ValidationError, match="Only literal values"):
            parse_statement("UPDATE expenses SET amount = amount WHERE description = 'x'")


class TestParseSelect:
    """Chain-joined SELECT with filters, grouping, ordering and limits."""

    def test_select_with_aliases_and_filter(self):
        statement = parse_statement(
            "SELECT e.amount, e.description, c.name AS category FROM expenses e "
            "JOIN categories c ON e.categoryId = c.id JOIN books b ON c.bookId = b.id "
            "WHERE b.name = 'House' AND e.amount >= 10 ORDER BY e.date DESC LIMIT 5"
        )
        assert isinstance(statement, SelectStatement)
        assert statement.table == Entity.EXPENSES
        assert statement.projections[2].label == "category"
        assert isinstance(statement.where, BoolGroup)
        assert statement.where.operator == "AND"
        assert statement.limit == 5

    def test_unqualified_columns_follow_the_chain(self):
        """Test a bare column resolves along expenses -> categories -> books."""
        statement = parse_statement("SELECT amount, name, currency FROM expenses")
        tables = [p.column.table for p in statement.projections]
        assert tables == [Entity.EXPENSES, Entity.CATEGORIES, Entity.BOOKS]

    def test_join_conditions_in_where_are_dropped(self):
        statement = parse_statement(
            "SELECT * FROM expenses e, categories c WHERE e.categoryId = c.id AND c.name = 'Food'"
        )
        assert statement.where == Comparison(
            column=ColumnRef(table=Entity.CATEGORIES, column="name"),
            operator="=",
            values=(SqlLiteral.string("Food"),),
        )

    def test_aggregate_group_and_label_order(self):
        statement = parse_statement(
            "SELECT c.name, SUM(e.amount) AS total FROM expenses e "
            "JOIN categories c ON e.categoryId = c.id GROUP BY c.name ORDER BY total DESC"
        )
        assert statement.is_aggregate
        assert statement.group_by == (ColumnRef(table=Entity.CATEGORIES, column="name"),)
        assert statement.order_by[0].label == "total"

    def test_operators(self):
        statement = parse_statement(
            "SELECT * FROM expenses WHERE paymentMethod IN ('Cash', 'PayPal') "
            "AND description LIKE '%bill%' AND date BETWEEN '2026-01-01' AND '2026-12-31' "
            "AND description IS NOT NULL AND amount <> 0"
        )
        operators = [item.operator for item in statement.where.items]
        assert operators == ["IN", "LIKE", "BETWEEN", "IS NOT NULL", "!="]

    def test_date_functions(self):
        """Test a column wrapper and a computed literal."""
        statement = parse_statement(
            "SELECT * FROM expenses WHERE YEAR(date) = YEAR(CURDATE()) AND MONTH(date) = 10"
        )
        year, month = statement.where.items
        assert year.function == "YEAR"
        assert year.values == (SqlLiteral.function("YEAR(CURDATE)"),)
        assert month.function == "MONTH"

    def test_or_groups(self):
        statement = parse_statement(
            "SELECT * FROM books WHERE name = 'House' OR (name = 'Travel' AND currency = 'EUR')"
        )
        assert statement.where.operator == "OR"
        assert isinstance(statement.where.items[1], BoolGroup)

    def test_limit_offset_forms(self):
        assert parse_statement("SELECT * FROM books LIMIT 10 OFFSET 20").offset == 20
        legacy = parse_statement("SELECT * FROM books LIMIT 20, 10")
        assert (legacy.limit, legacy.offset) == (10, 20)

    def test_unsupported_constructs(self):
        with pytest.raises(ValidationError, match="HAVING"):
            parse_statement(
                "SELECT c.name, SUM(e.amount) FROM expenses e JOIN categories c ON e.categoryId = c.id "
                "GROUP BY c.name HAVING SUM(e.amount) > 5"
            )
        with pytest.raises(ValidationError, match="two columns"):
            parse_statement("SELECT * FROM expenses e WHERE e.createdAt = e.updatedAt")
        with pytest.raises(ValidationError, match="without FROM"):
            parse_statement("SELECT 1")

    def test_table_outside_chain(self):
        with pytest.raises(ValidationError, match="cannot be combined"):
            parse_statement("SELECT * FROM books b JOIN expenses e ON e.id = b.id")


class TestRepairs:
    """Mechanical repairs are applied and recorded, never guessed."""

    def test_dangling_and(self):
        statement = parse_statement("SELECT * FROM books WHERE name = 'House' AND")
        assert statement.repairs == ("removed dangling AND",)
        assert statement.where.operator == "="

    def test_empty_where(self):
        statement = parse_statement("SELECT * FROM books WHERE ORDER BY name")
        assert statement.where is None
        assert "removed empty WHERE" in statement.repairs

    def test_leading_and(self):
        statement = parse_statement("SELECT * FROM books WHERE AND name = 'House'")
        assert statement.repairs == ("removed leading AND",)

    def test_constant_condition(self):
        statement = parse_statement("SELECT * FROM books WHERE 1 = 1 AND name = 'House'")
        assert statement.repairs == ("removed constant condition",)
        assert isinstance(statement.where, Comparison)

    def test_non_tautology_is_refused(self):
        with pytest.raises(ValidationError):
            parse_statement("SELECT * FROM books WHERE 1 = 2")


class TestUnsupported:

    def test_other_verbs_become_unsupported(self):
        statement = parse_statement("SHOW TABLES")
        assert isinstance(statement, UnsupportedStatement)
        assert statement.verb == "SHOW"
