"""
Repository exception hierarchy.

All exceptions inherit from ``RepositoryError`` and provide ``to_dict()``
for API-friendly error responses. Errors raised by psycopg while executing a
statement are not wrapped and reach the caller unchanged.
"""

from __future__ import annotations

from typing import Any


class RepositoryError(Exception):
    """Base exception for all repository errors."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": str(self),
        }


class InvalidIdentifierError(RepositoryError, ValueError):
    """A column, alias or table name is not a plain SQL identifier."""

    def __init__(self, identifier: Any) -> None:
        self.identifier = identifier
        super().__init__(f"Unsafe identifier: {identifier!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "INVALID_IDENTIFIER",
            "message": str(self),
            "identifier": str(self.identifier),
        }


class UnsafeOperatorError(RepositoryError, ValueError):
    """A criteria operator is not on the allow-list."""

    def __init__(self, operator: Any, allowed: frozenset[str] | None = None) -> None:
        self.operator = operator
        self.allowed = sorted(allowed) if allowed else []
        super().__init__(f"Unsafe operator: {operator!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "UNSAFE_OPERATOR",
            "message": str(self),
            "operator": str(self.operator),
            "allowed": self.allowed,
        }


class MalformedOperandError(RepositoryError, ValueError):
    """An operator received an operand of the wrong shape (e.g. BETWEEN)."""

    def __init__(self, operator: str, operand: Any) -> None:
        self.operator = operator
        self.operand = operand
        super().__init__(f"{operator} expects a two-element sequence, got {operand!r}")


class RecordNotFoundAfterWriteError(RepositoryError, LookupError):
    """
    A row that was just written could not be read back.

    Distinct from a plain "not found" read, which returns ``None``.
    """

    def __init__(self, table: str, record_id: Any) -> None:
        self.table = table
        self.record_id = record_id
        super().__init__(f"Updated record not found: {table} id={record_id!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "RECORD_NOT_FOUND_AFTER_WRITE",
            "message": str(self),
            "table": self.table,
            "id": self.record_id,
        }


class MapperError(RepositoryError, TypeError):
    """The configured row mapper cannot be called."""
