"""
Tests for the semantic validator.

Every test parses real statement text first, then validates it against
the in-memory catalog (House/USD with Groceries, Travel/EUR with Hotels).
"""

from decimal import Decimal

import pytest

from expense_gateway.gateway.errors import (
    DuplicateEntity,
    MissingCategory,
    UnknownBook,
    ValidationError,
)
from expense_gateway.gateway.parser import parse_statement
from expense_gateway.gateway.validator import StatementValidator, coerce_literal, is_uuid
from expense_gateway.models.entities import Book
from expense_gateway.models.statements import SqlLiteral, UnsupportedStatement


@pytest.fixture
def validate(catalog):
    validator = StatementValidator()

    def _validate(text):
        return validator.validate(parse_statement(text), catalog)

    return _validate


class TestExpenseInsert:
    """Rules for new expenses."""

    def test_valid_expense(self, validate, ids):
        text = (
            "INSERT INTO expenses (amount, description, categoryId, date, paymentMethod) "
            f"VALUES (40, 'Milk', '{ids.groceries}', CURDATE(), 'Cash')"
        )
        assert validate(text).value_of("amount").value == "40"

    def test_required_fields(self, validate):
        with pytest.raises(ValidationError) as exc_info:
            validate("INSERT INTO expenses (amount) VALUES (5)")
        assert exc_info.value.field == "categoryId"

    def test_negative_amount(self, validate, ids):
        with pytest.raises(ValidationError, match="negative"):
            validate(f"INSERT INTO expenses (amount, categoryId) VALUES (-5, '{ids.groceries}')")

    def test_amount_must_be_numeric(self, validate, ids):
        with pytest.raises(ValidationError, match="not a valid decimal"):
            validate(f"INSERT INTO expenses (amount, categoryId) VALUES ('forty', '{ids.groceries}')")

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity", "sNaN"])
    def test_amount_must_be_finite(self, validate, ids, amount):
        with pytest.raises(ValidationError) as exc_info:
            validate(f"INSERT INTO expenses (amount, categoryId) VALUES ('{amount}', '{ids.groceries}')")
        assert exc_info.value.field == "amount"

    def test_update_to_nan_amount(self, validate):
        with pytest.raises(ValidationError) as exc_info:
            validate("UPDATE expenses SET amount = 'NaN' WHERE description = 'Weekly shop'")
        assert exc_info.value.field == "amount"

    def test_payment_method_enumeration(self, validate, ids):
        with pytest.raises(ValidationError) as exc_info:
            validate(
                "INSERT INTO expenses (amount, categoryId, paymentMethod) "
                f"VALUES (5, '{ids.groceries}', 'Venmo')"
            )
        assert exc_info.value.field == "paymentMethod"

    def test_category_label_is_missing_category(self, validate):
        """Test a category name in place of an id is a missing category, not an error."""
        with pytest.raises(MissingCategory) as exc_info:
            validate("INSERT INTO expenses (amount, categoryId) VALUES (40, 'Bills & Utilities')")
        assert exc_info.value.label == "Bills & Utilities"
        assert exc_info.value.field == "categoryId"

    @pytest.mark.parametrize("placeholder", ["<category_id>", "[categoryId]", "category_id", "uuid", "..."])
    def test_placeholder_category(self, validate, placeholder):
        with pytest.raises(ValidationError) as exc_info:
            validate(f"INSERT INTO expenses (amount, categoryId) VALUES (40, '{placeholder}')")
        assert not isinstance(exc_info.value, MissingCategory)

    def test_foreign_category_id(self, validate, ids):
        """Test another user's category id is refused."""
        with pytest.raises(ValidationError, match="not one of your categories"):
            validate(f"INSERT INTO expenses (amount, categoryId) VALUES (40, '{ids.secret}')")

    def test_function_in_wrong_column(self, validate, ids):
        with pytest.raises(ValidationError, match="cannot be used"):
            validate(
                "INSERT INTO expenses (amount, categoryId, description) "
                f"VALUES (5, '{ids.groceries}', NOW())"
            )


class TestCategoryAndBookInsert:
    """Rules for new categories and books."""

    def test_valid_category(self, validate, ids):
        validate(f"INSERT INTO categories (name, bookId) VALUES ('Utilities', '{ids.house}')")

    def test_book_name_instead_of_id(self, validate):
        with pytest.raises(ValidationError, match="not its name"):
            validate("INSERT INTO categories (name, bookId) VALUES ('Utilities', 'House')")

    def test_unknown_book(self, validate):
        with pytest.raises(UnknownBook) as exc_info:
            validate("INSERT INTO categories (name, bookId) VALUES ('Utilities', 'Vault')")
        assert exc_info.value.available == ["House", "Travel"]

    def test_duplicate_category_in_same_book(self, validate, ids):
        with pytest.raises(DuplicateEntity):
            validate(f"INSERT INTO categories (name, bookId) VALUES ('groceries', '{ids.house}')")

    def test_same_name_in_another_book_is_allowed(self, validate, ids):
        validate(f"INSERT INTO categories (name, bookId) VALUES ('Groceries', '{ids.travel}')")

    def test_template_categories_refused(self, validate, ids):
        with pytest.raises(ValidationError, match="Template"):
            validate(
                "INSERT INTO categories (name, bookId, isDefault) "
                f"VALUES ('Utilities', '{ids.house}', TRUE)"
            )

    def test_duplicate_book(self, validate):
        with pytest.raises(DuplicateEntity) as exc_info:
            validate("INSERT INTO books (name, currency) VALUES ('HOUSE', 'USD')")
        assert exc_info.value.entity == "book"

    def test_unsupported_currency(self, validate):
        with pytest.raises(ValidationError, match="supported currency"):
            validate("INSERT INTO books (name, currency) VALUES ('Trip', 'XYZ')")


class TestArchivedBooks:
    """Archived books can be found and restored, but take no new entries."""

    OLD_ID = "5a4c3f2e-1d0b-4a9c-8e7f-6d5c4b3a2f10"

    @pytest.fixture
    def validate_archived(self, catalog, ids):
        catalog.archived_books.append(
            Book(id=self.OLD_ID, user_id=ids.user, name="Old", currency="USD", is_archived=True)
        )
        validator = StatementValidator()

        def _validate(text):
            return validator.validate(parse_statement(text), catalog)

        return _validate

    def test_restore_by_name(self, validate_archived):
        validate_archived("UPDATE books SET isArchived = false WHERE name = 'Old'")

    def test_restore_by_id(self, validate_archived):
        validate_archived(f"UPDATE books SET isArchived = false WHERE id = '{self.OLD_ID}'")

    def test_archived_name_is_a_duplicate(self, validate_archived):
        with pytest.raises(DuplicateEntity, match="archived"):
            validate_archived("INSERT INTO books (name, currency) VALUES ('old', 'EUR')")

    def test_no_new_categories_in_archived_book(self, validate_archived):
        with pytest.raises(UnknownBook) as exc_info:
            validate_archived(f"INSERT INTO categories (name, bookId) VALUES ('Misc', '{self.OLD_ID}')")
        assert exc_info.value.available == ["House", "Travel"]


class TestUpdate:
    """Rules for changes to existing rows."""

    def test_sensitive_field(self, validate):
        with pytest.raises(ValidationError) as exc_info:
            validate("UPDATE expenses SET categoryId = 'x' WHERE description = 'Milk'")
        assert exc_info.value.field == "categoryId"

    def test_field_outside_allowlist(self, validate):
        with pytest.raises(ValidationError, match="cannot be changed on a category"):
            validate("UPDATE categories SET isDefault = TRUE WHERE name = 'Groceries'")

    def test_unfiltered_update_refused(self, validate):
        with pytest.raises(ValidationError, match="Refusing to update every expense"):
            validate("UPDATE expenses SET paymentMethod = 'Cash'")

    def test_owner_filter_alone_is_not_a_filter(self, validate):
        with pytest.raises(ValidationError, match="add a filter"):
            validate("UPDATE books SET description = 'x' WHERE userId = 'someone'")

    def test_limit_bounds_an_update(self, validate):
        validate("UPDATE expenses SET paymentMethod = 'Cash' ORDER BY date DESC LIMIT 1")

    def test_currency_change_is_checked(self, validate):
        with pytest.raises(ValidationError, match="supported currency"):
            validate("UPDATE books SET currency = 'ABC' WHERE name = 'House'")


class TestFilters:
    """Book references in filters must be the user's own."""

    def test_unknown_book_name_lists_available_books(self, validate):
        with pytest.raises(UnknownBook) as exc_info:
            validate(
                "SELECT * FROM expenses e JOIN categories c ON e.categoryId = c.id "
                "JOIN books b ON c.bookId = b.id WHERE b.name = 'Vault'"
            )
        assert "'House', 'Travel'" in exc_info.value.message

    def test_like_must_match_a_book(self, validate):
        validate("SELECT * FROM books WHERE name LIKE '%hou%'")
        with pytest.raises(UnknownBook):
            validate("SELECT * FROM books WHERE name LIKE '%vault%'")

    def test_foreign_book_id(self, validate, ids):
        with pytest.raises(UnknownBook):
            validate(f"SELECT * FROM categories WHERE bookId = '{ids.private}'")

    def test_filter_value_types(self, validate):
        with pytest.raises(ValidationError, match="not a valid date"):
            validate("SELECT * FROM expenses WHERE date >= 'last week'")

    def test_unsupported_statement(self, catalog):
        with pytest.raises(ValidationError, match="Unsupported"):
            StatementValidator().validate(UnsupportedStatement(verb="SHOW"), catalog)


class TestCoercion:

    def test_coerce_kinds(self):
        assert coerce_literal("boolean", SqlLiteral.number(1), "isArchived") is True
        assert coerce_literal("decimal", SqlLiteral.number("12.50"), "amount") == Decimal("12.50")
        assert coerce_literal("string", SqlLiteral.null(), "description") is None

    def test_uuid_shape(self, ids):
        assert is_uuid(ids.house)
        assert not is_uuid("House")
        assert not is_uuid(None)
