"""
SQLAlchemy Storage Implementation

The ledger lives in a relational database reached through a SQLAlchemy
AsyncEngine. SQLite (aiosqlite) is the default for local use and tests;
any async driver works in production.

TRADEOFFS:
- One transaction per executed statement, never across statements
- Connection setup is retried; statements are not
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy import insert, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.sql import Executable
from tenacity import retry, stop_after_attempt, wait_exponential

from expense_gateway.config import get_settings
from expense_gateway.models.entities import (
    Book,
    Category,
    ChatRole,
    ConversationTurn,
    UserCatalog,
)
from expense_gateway.services.storage.interface import (
    ConnectionError,
    DuplicateError,
    LedgerStoreInterface,
    LedgerTransaction,
    StorageError,
    WriteResult,
)
from expense_gateway.services.storage.schema import (
    books,
    categories,
    chat_messages,
    metadata,
)


logger = structlog.get_logger(__name__)


def _describe(error: SQLAlchemyError) -> str:
    """The driver's own message, without SQLAlchemy's statement dump."""
    original = getattr(error, "orig", None)
    return str(original) if original is not None else str(error).split("\n")[0]


class _SQLTransaction(LedgerTransaction):
    """LedgerTransaction over one AsyncConnection."""

    def __init__(self, connection: AsyncConnection):
        self._conn = connection

    async def execute_write(self, statement: Executable) -> WriteResult:
        try:
            result = await self._conn.execute(statement)
        except IntegrityError as e:
            raise DuplicateError(_describe(e)) from e
        except SQLAlchemyError as e:
            raise StorageError(_describe(e)) from e

        inserted_id = None
        if result.is_insert and result.inserted_primary_key:
            inserted_id = str(result.inserted_primary_key[0])
        return WriteResult(row_count=max(result.rowcount, 0), inserted_id=inserted_id)

    async def fetch_rows(self, statement: Executable) -> list[dict]:
        try:
            result = await self._conn.execute(statement)
        except SQLAlchemyError as e:
            raise StorageError(_describe(e)) from e
        return [dict(row) for row in result.mappings().all()]


class SQLLedgerStore(LedgerStoreInterface):
    """
    Ledger store backed by a SQLAlchemy AsyncEngine.

    The engine is created lazily on first use.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: Optional[bool] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        if engine is None and database_url is None:
            settings = get_settings().database
            database_url = settings.url
            echo = settings.echo if echo is None else echo
        self._url = database_url
        self._echo = bool(echo)
        self._engine = engine

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def connect(self) -> AsyncEngine:
        """
        Create the engine and prove it can reach the database.
        """
        if self._engine is None:
            try:
                engine = create_async_engine(self._url, echo=self._echo)
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            except SQLAlchemyError as e:
                raise ConnectionError(f"Failed to connect to database: {_describe(e)}") from e
            self._engine = engine
            logger.info("store_connected", dialect=engine.dialect.name)
        return self._engine

    async def create_all(self) -> None:
        """Create any missing tables (local development and tests)."""
        engine = await self.connect()
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LedgerTransaction]:
        engine = await self.connect()
        try:
            async with engine.begin() as conn:
                yield _SQLTransaction(conn)
        except SQLAlchemyError as e:
            raise StorageError(_describe(e)) from e

    async def load_catalog(self, user_id: str) -> UserCatalog:
        book_query = (
            select(books)
            .where(books.c.userId == user_id)
            .order_by(books.c.name)
        )
        book_rows = await self.fetch_rows(book_query)
        user_books = [
            Book(
                id=row["id"],
                user_id=row["userId"],
                name=row["name"],
                currency=row["currency"],
                description=row["description"] or "",
                is_archived=bool(row["isArchived"]),
            )
            for row in book_rows
        ]
        active_books = [b for b in user_books if not b.is_archived]

        user_categories: list[Category] = []
        if active_books:
            category_query = (
                select(categories)
                .where(
                    categories.c.bookId.in_([b.id for b in active_books]),
                    categories.c.isDisabled.is_(False),
                )
                .order_by(categories.c.name)
            )
            user_categories = [
                Category(
                    id=row["id"],
                    book_id=row["bookId"],
                    name=row["name"],
                    description=row["description"] or "",
                    icon=row["icon"] or "",
                    color=row["color"] or "",
                    is_disabled=bool(row["isDisabled"]),
                    is_default=bool(row["isDefault"]),
                )
                for row in await self.fetch_rows(category_query)
            ]

        return UserCatalog(
            user_id=user_id,
            books=active_books,
            archived_books=[b for b in user_books if b.is_archived],
            categories=user_categories,
        )

    async def append_turn(self, turn: ConversationTurn) -> None:
        await self.execute_write(
            insert(chat_messages).values(
                id=turn.id,
                userId=turn.user_id,
                role=turn.role.value,
                content=turn.content,
                createdAt=turn.created_at,
            )
        )

    async def recent_turns(self, user_id: str, limit: int = 10) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        query = (
            select(chat_messages)
            .where(chat_messages.c.userId == user_id)
            .order_by(chat_messages.c.createdAt.desc())
            .limit(limit)
        )
        rows = await self.fetch_rows(query)
        turns = [
            ConversationTurn(
                id=row["id"],
                user_id=row["userId"],
                role=ChatRole(row["role"]),
                content=row["content"],
                created_at=row["createdAt"],
            )
            for row in rows
        ]
        return list(reversed(turns))
