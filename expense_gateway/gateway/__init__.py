"""
Gateway pipeline: extract → screen → classify/parse → validate →
rewrite → convert currency → execute → format.

Only the error taxonomy is re-exported here; import stages from their
modules.
"""

from expense_gateway.gateway.errors import (
    DuplicateEntity,
    ExecutionFailure,
    GatewayError,
    MissingCategory,
    SecurityViolation,
    UnknownBook,
    UpstreamUnavailable,
    ValidationError,
)

__all__ = [
    "DuplicateEntity",
    "ExecutionFailure",
    "GatewayError",
    "MissingCategory",
    "SecurityViolation",
    "UnknownBook",
    "UpstreamUnavailable",
    "ValidationError",
]
