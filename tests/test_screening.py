"""
Tests for statement extraction, lexical screening and classification.

Everything here runs before any statement is understood, so the tests
only use plain strings.
"""

import pytest

from expense_gateway.gateway.classifier import classify
from expense_gateway.gateway.errors import SecurityViolation
from expense_gateway.gateway.extractor import extract_statements, strip_code_blocks
from expense_gateway.gateway.screener import screen_statement
from expense_gateway.models.statements import StatementKind


class TestExtractor:
    """Only fenced code is ever a candidate statement."""

    def test_extracts_sql_block(self):
        reply = "Here you go:\n```sql\nSELECT * FROM books;\n```\nLet me know!"
        assert extract_statements(reply) == ["SELECT * FROM books"]

    def test_splits_multiple_statements_in_order(self):
        """Test one block with two statements yields both, in order."""
        reply = (
            "```sql\n"
            "INSERT INTO books (name, currency) VALUES ('Trip; 2026', 'EUR');\n"
            "SELECT * FROM books;\n"
            "```"
        )
        assert extract_statements(reply) == [
            "INSERT INTO books (name, currency) VALUES ('Trip; 2026', 'EUR')",
            "SELECT * FROM books",
        ]

    def test_collects_every_sql_block(self):
        reply = "```sql\nSELECT * FROM books\n```\nand\n```SQL\nSELECT * FROM categories\n```"
        assert extract_statements(reply) == ["SELECT * FROM books", "SELECT * FROM categories"]

    def test_ignores_sql_outside_fences(self):
        """Test prose that looks like SQL never becomes a statement."""
        reply = "You could run SELECT * FROM books; but I won't."
        assert extract_statements(reply) == []

    def test_untagged_fence_only_when_it_is_sql(self):
        assert extract_statements("```\nSELECT * FROM books\n```") == ["SELECT * FROM books"]
        assert extract_statements("```\nhello world\n```") == []

    def test_drops_empty_fragments(self):
        assert extract_statements("```sql\n;\n  ;\n```") == []

    def test_empty_reply(self):
        assert extract_statements("") == []
        assert extract_statements(None) == []

    def test_strip_code_blocks_keeps_prose(self):
        reply = "Which book?\n```sql\nSELECT 1\n```\nThanks"
        assert strip_code_blocks(reply) == "Which book?\n\nThanks"


class TestScreener:
    """Lexical checks that never parse."""

    @pytest.mark.parametrize("statement", [
        "DROP TABLE books",
        "SELECT * FROM books WHERE name = 'x' UNION SELECT * FROM users",
        "DELETE FROM expenses WHERE id = '1'",
        "SELECT SLEEP(5) FROM books",
        "TRUNCATE expenses",
    ])
    def test_denylisted_keywords(self, statement):
        with pytest.raises(SecurityViolation):
            screen_statement(statement)

    def test_comment_delimiters(self):
        """Test every comment form is refused."""
        for statement in (
            "SELECT * FROM books -- hide",
            "SELECT * FROM books /* x */",
            "SELECT * FROM books # x",
        ):
            with pytest.raises(SecurityViolation, match="Comment"):
                screen_statement(statement)

    def test_comment_inside_string_literal(self):
        with pytest.raises(SecurityViolation):
            screen_statement("INSERT INTO books (name, currency) VALUES ('a--b', 'USD')")

    def test_multiple_statements(self):
        with pytest.raises(SecurityViolation, match="Multiple statements"):
            screen_statement("SELECT * FROM books; SELECT * FROM categories")

    def test_trailing_terminator_is_allowed(self):
        screen_statement("SELECT * FROM books;")

    def test_inconsistent_verbs(self):
        """Test a SELECT may not smuggle a write and vice versa."""
        with pytest.raises(SecurityViolation, match="INSERT"):
            screen_statement("SELECT * FROM books WHERE name = (INSERT)")
        with pytest.raises(SecurityViolation, match="SELECT"):
            screen_statement("UPDATE books SET name = 'x' WHERE id IN (SELECT id FROM books)")

    def test_update_filter_shape(self):
        with pytest.raises(SecurityViolation, match="only one WHERE"):
            screen_statement("UPDATE books SET name = 'x' WHERE id = '1' WHERE id = '2'")
        with pytest.raises(SecurityViolation, match="before WHERE"):
            screen_statement("UPDATE books SET name = 'x' AND currency = 'USD' WHERE id = '1'")

    def test_unterminated_string(self):
        with pytest.raises(SecurityViolation):
            screen_statement("SELECT * FROM books WHERE name = 'House")

    def test_empty_statement(self):
        with pytest.raises(SecurityViolation):
            screen_statement("   ")

    def test_clean_statements_pass(self):
        assert screen_statement(
            "INSERT INTO expenses (amount, categoryId, date) VALUES (40, 'Bills & Utilities', CURDATE())"
        ) == StatementKind.INSERT
        assert screen_statement(
            "UPDATE expenses SET amount = 45 WHERE description = 'Lunch' LIMIT 1"
        ) == StatementKind.UPDATE


class TestClassifier:
    """Classification by leading verb."""

    def test_known_verbs(self):
        assert classify("insert into books (name) values ('x')") == StatementKind.INSERT
        assert classify("  UPDATE books SET name = 'x'") == StatementKind.UPDATE
        assert classify("Select * from books") == StatementKind.SELECT

    def test_anything_else_is_unsupported(self):
        assert classify("SHOW TABLES") == StatementKind.UNSUPPORTED
        assert classify("(SELECT 1)") == StatementKind.UNSUPPORTED
        assert classify("") == StatementKind.UNSUPPORTED

    def test_text_the_lexer_rejects(self):
        assert classify("SELECT * FROM books WHERE name = 'House") == StatementKind.SELECT
        assert classify("DELETE FROM books WHERE name = 'House") == StatementKind.UNSUPPORTED
