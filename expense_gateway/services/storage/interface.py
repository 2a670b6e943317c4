"""
Abstract Storage Interface

DESIGN DECISION: The gateway talks to the relational store through this
interface only. This allows us to:
1. Run the same pipeline against SQLite in tests and MySQL/Postgres in production
2. Keep SQL rendering (executor) separate from connection handling
3. Substitute an in-memory fake where a test has no use for a database

Every statement the executor runs is a SQLAlchemy Core construct with
bound parameters. The store never sees raw model text.
"""

from abc import ABC, abstractmethod
from typing import AsyncContextManager, Optional

from pydantic import BaseModel
from sqlalchemy.sql import Executable

from expense_gateway.models.entities import ConversationTurn, UserCatalog


class WriteResult(BaseModel):
    """Outcome of one INSERT or UPDATE."""
    row_count: int = 0
    inserted_id: Optional[str] = None


class LedgerTransaction(ABC):
    """Statements run inside one store transaction."""

    @abstractmethod
    async def execute_write(self, statement: Executable) -> WriteResult:
        """
        Run an INSERT or UPDATE.

        Raises:
            StorageError: If the store rejects the statement
        """
        pass

    @abstractmethod
    async def fetch_rows(self, statement: Executable) -> list[dict]:
        """
        Run a SELECT and return rows as dicts keyed by column label.

        Raises:
            StorageError: If the store rejects the statement
        """
        pass


class LedgerStoreInterface(ABC):
    """
    Abstract interface for the expense ledger store.

    Any backend must implement these methods.
    """

    @abstractmethod
    def transaction(self) -> AsyncContextManager[LedgerTransaction]:
        """
        Open one transaction. Committed on normal exit, rolled back on error.
        """
        pass

    async def execute_write(self, statement: Executable) -> WriteResult:
        """Run one write in its own transaction."""
        async with self.transaction() as tx:
            return await tx.execute_write(statement)

    async def fetch_rows(self, statement: Executable) -> list[dict]:
        """Run one read in its own transaction."""
        async with self.transaction() as tx:
            return await tx.fetch_rows(statement)

    @abstractmethod
    async def load_catalog(self, user_id: str) -> UserCatalog:
        """
        Fetch the user's books (archived ones kept apart) and the enabled
        categories of the active books.

        Args:
            user_id: Requesting user

        Returns:
            The request-scoped catalog
        """
        pass

    @abstractmethod
    async def append_turn(self, turn: ConversationTurn) -> None:
        """Append one turn to the user's chat log."""
        pass

    @abstractmethod
    async def recent_turns(self, user_id: str, limit: int = 10) -> list[ConversationTurn]:
        """
        Get the user's most recent turns.

        Returns:
            Up to `limit` turns, oldest first
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class DuplicateError(StorageError):
    """The store rejected a row on a uniqueness or foreign-key constraint."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
