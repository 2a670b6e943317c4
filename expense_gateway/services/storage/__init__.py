"""
Storage Services Package

Provides the abstract ledger-store interface and its SQLAlchemy
implementation, plus the Core schema the executor renders against.
"""

from expense_gateway.services.storage.interface import (
    ConnectionError,
    DuplicateError,
    LedgerStoreInterface,
    LedgerTransaction,
    StorageError,
    WriteResult,
)
from expense_gateway.services.storage.sql_store import SQLLedgerStore

__all__ = [
    # Interfaces
    "LedgerStoreInterface",
    "LedgerTransaction",
    "WriteResult",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "StorageError",
    # SQLAlchemy implementation
    "SQLLedgerStore",
]
