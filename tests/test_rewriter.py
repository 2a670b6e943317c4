"""
Tests for tenant-isolation rewriting.
"""

import pytest

from expense_gateway.gateway.parser import parse_statement
from expense_gateway.gateway.rewriter import (
    CANONICAL_JOINS,
    OWNER_COLUMN,
    TenantRewriter,
    strip_owner_predicates,
)
from expense_gateway.models.statements import Entity, iter_comparisons


USER = "0b8f1c9e-3d4a-4f6b-9c2e-1a2b3c4d5e6f"


class TestTenantRewriter:
    """Every statement leaves the rewriter scoped to the requesting user."""

    def test_select_gets_owner_and_chain(self):
        statement = parse_statement("SELECT * FROM expenses WHERE amount > 10")
        rewritten = TenantRewriter(USER).rewrite(statement)
        assert rewritten.owner_id == USER
        assert rewritten.joins == CANONICAL_JOINS[Entity.EXPENSES]
        assert rewritten.where == statement.where

    def test_model_written_owner_filter_is_replaced(self):
        """Test another user id written by the model never survives."""
        statement = parse_statement(
            "SELECT * FROM expenses e JOIN categories c ON e.categoryId = c.id "
            "JOIN books b ON c.bookId = b.id WHERE b.userId = 'attacker' OR b.name = 'House'"
        )
        rewritten = TenantRewriter(USER).rewrite(statement)
        columns = [c.column for c in iter_comparisons(rewritten.where)]
        assert OWNER_COLUMN not in columns
        assert rewritten.where.column.column == "name"
        assert rewritten.owner_id == USER

    def test_update_is_scoped(self):
        statement = parse_statement("UPDATE categories SET color = '#ff0000' WHERE name = 'Groceries'")
        rewritten = TenantRewriter(USER).rewrite(statement)
        assert rewritten.owner_id == USER
        assert rewritten.joins == CANONICAL_JOINS[Entity.CATEGORIES]

    def test_rewrite_is_idempotent(self):
        rewriter = TenantRewriter(USER)
        statement = parse_statement(
            "SELECT c.name, SUM(e.amount) FROM expenses e, categories c, books b "
            "WHERE b.userId = 'x' AND e.date >= '2026-01-01' GROUP BY c.name"
        )
        once = rewriter.rewrite(statement)
        assert rewriter.rewrite(once) == once

    def test_book_insert_is_forced_to_requesting_user(self):
        statement = parse_statement(
            "INSERT INTO books (name, currency, userId) VALUES ('Trip', 'EUR', 'attacker')"
        )
        rewritten = TenantRewriter(USER).rewrite(statement)
        assert rewritten.value_of("userId").value == USER

    def test_other_inserts_pass_through(self):
        statement = parse_statement("INSERT INTO categories (name, bookId) VALUES ('Food', 'b1')")
        assert TenantRewriter(USER).rewrite(statement) == statement

    def test_requires_user(self):
        with pytest.raises(ValueError):
            TenantRewriter("")


class TestStripOwnerPredicates:

    def test_only_owner_filter_leaves_nothing(self):
        statement = parse_statement("SELECT * FROM books WHERE userId = 'x'")
        assert strip_owner_predicates(statement.where) is None

    def test_nested_groups_collapse(self):
        statement = parse_statement(
            "SELECT * FROM books WHERE name = 'House' AND (userId = 'x' OR userId = 'y')"
        )
        stripped = strip_owner_predicates(statement.where)
        assert stripped.column.column == "name"
