"""
Shared fixtures for the gateway tests.

- `catalog`: an in-memory UserCatalog (no database)
- `store`: a SQLite ledger in a temp file, seeded for two users
- `agent` / `rates`: scripted stand-ins for the model and the rate service

No test talks to Gemini or a real rates endpoint.
"""

from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy import insert

from expense_gateway.agents import AgentReply
from expense_gateway.audit import AuditLogger
from expense_gateway.config import GatewayConfig
from expense_gateway.gateway.errors import UpstreamUnavailable
from expense_gateway.models.entities import Book, Category, UserCatalog
from expense_gateway.orchestrator import ChatFlow
from expense_gateway.services.storage import SQLLedgerStore
from expense_gateway.services.storage.schema import books, categories, expenses, users


IDS = SimpleNamespace(
    user="0b8f1c9e-3d4a-4f6b-9c2e-1a2b3c4d5e6f",
    other_user="7e6d5c4b-3a29-4817-8f6e-5d4c3b2a1908",
    house="11111111-1111-4111-8111-111111111111",
    travel="22222222-2222-4222-8222-222222222222",
    private="33333333-3333-4333-8333-333333333333",
    groceries="44444444-4444-4444-8444-444444444444",
    hotels="55555555-5555-4555-8555-555555555555",
    secret="66666666-6666-4666-8666-666666666666",
    lunch="77777777-7777-4777-8777-777777777777",
    hidden_expense="88888888-8888-4888-8888-888888888888",
)

FIXED_NOW = datetime(2026, 10, 16, 9, 30, 0)


# =============================================================================
# FAKES
# =============================================================================

class ScriptedAgent:
    """Returns queued replies in order and records what it was asked."""

    def __init__(self, *replies: str, model_name: str = "gemini-test"):
        self.replies = list(replies)
        self.model_name = model_name
        self.calls = []

    def queue(self, *replies: str) -> None:
        self.replies.extend(replies)

    async def complete(self, messages, catalog, user_id=None, correlation_id=None) -> AgentReply:
        self.calls.append(messages)
        text = self.replies.pop(0) if self.replies else ""
        return AgentReply(text=text, model_name=self.model_name)


class FakeRates:
    """Rate provider backed by a dict; a missing pair is an outage."""

    def __init__(self, rates=None):
        self.rates = dict(rates or {})
        self.calls = []

    async def get_rate(self, source: str, target: str) -> Decimal:
        self.calls.append((source, target))
        if (source, target) not in self.rates:
            raise UpstreamUnavailable("exchange_rates", f"No {source}->{target} rate")
        return self.rates[(source, target)]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def ids():
    return IDS


@pytest.fixture
def catalog() -> UserCatalog:
    """House (USD) with Groceries, Travel (EUR) with Hotels."""
    return UserCatalog(
        user_id=IDS.user,
        books=[
            Book(id=IDS.house, user_id=IDS.user, name="House", currency="USD"),
            Book(id=IDS.travel, user_id=IDS.user, name="Travel", currency="EUR"),
        ],
        categories=[
            Category(id=IDS.groceries, book_id=IDS.house, name="Groceries"),
            Category(id=IDS.hotels, book_id=IDS.travel, name="Hotels"),
        ],
    )


async def seed_ledger(store: SQLLedgerStore) -> None:
    """Two users; the second owns a book the first must never see."""
    now = FIXED_NOW
    await store.execute_write(insert(users).values(id=IDS.user, email="me@example.com", name="Me"))
    await store.execute_write(
        insert(users).values(id=IDS.other_user, email="other@example.com", name="Other")
    )
    for book_id, owner, name, currency in (
        (IDS.house, IDS.user, "House", "USD"),
        (IDS.travel, IDS.user, "Travel", "EUR"),
        (IDS.private, IDS.other_user, "Private", "USD"),
    ):
        await store.execute_write(insert(books).values(
            id=book_id, userId=owner, name=name, currency=currency,
            isArchived=False, createdAt=now, updatedAt=now,
        ))
    for category_id, book_id, name in (
        (IDS.groceries, IDS.house, "Groceries"),
        (IDS.hotels, IDS.travel, "Hotels"),
        (IDS.secret, IDS.private, "Groceries"),
    ):
        await store.execute_write(insert(categories).values(
            id=category_id, bookId=book_id, name=name,
            isDisabled=False, isDefault=False, createdAt=now, updatedAt=now,
        ))
    for expense_id, category_id, amount, description in (
        (IDS.lunch, IDS.groceries, Decimal("25.50"), "Weekly shop"),
        (IDS.hidden_expense, IDS.secret, Decimal("999.00"), "Not yours"),
    ):
        await store.execute_write(insert(expenses).values(
            id=expense_id, categoryId=category_id, amount=amount,
            date=date(2026, 10, 1), description=description,
            paymentMethod="Cash", isDisabled=False, createdAt=now, updatedAt=now,
        ))


@pytest_asyncio.fixture(scope="function")
async def store(tmp_path):
    """Seeded SQLite ledger in a temp file, closed after the test."""
    ledger = SQLLedgerStore(database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await ledger.create_all()
    await seed_ledger(ledger)
    yield ledger
    await ledger.close()


@pytest.fixture
def agent() -> ScriptedAgent:
    return ScriptedAgent()


@pytest.fixture
def rates() -> FakeRates:
    return FakeRates({("EUR", "USD"): Decimal("1.10"), ("USD", "EUR"): Decimal("0.90")})


@pytest.fixture
def audit_logger() -> AuditLogger:
    return AuditLogger()


@pytest.fixture
def chat_flow(store, agent, rates, audit_logger) -> ChatFlow:
    return ChatFlow(
        store=store,
        agent=agent,
        rate_service=rates,
        config=GatewayConfig(),
        audit_logger=audit_logger,
        clock=lambda: FIXED_NOW,
    )
