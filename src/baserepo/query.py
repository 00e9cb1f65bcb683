"""
Fluent SQL statement builder on top of ``psycopg.sql``.

Identifiers are always emitted through ``sql.Identifier`` and values through
named placeholders, so a built statement is a ``sql.Composed`` plus a params
dict ready for ``cursor.execute()``.

Parameter names are allocated from a monotonic counter (``<prefix>_<n>``)
that a statement shares with all of its subqueries, which keeps names unique
no matter which fields are filtered on.
"""

import itertools
import re
from collections.abc import Iterable, Mapping
from typing import Any

from psycopg import sql

_PREFIX_SANITIZER = re.compile(r"[^A-Za-z0-9_]")


class Parameters:
    """Bound values of one statement, shared with its subqueries."""

    def __init__(self):
        self.values: dict[str, Any] = {}
        self._counter = itertools.count(1)

    def bind(self, value: Any, prefix: str = "p") -> sql.Placeholder:
        name = f"{_PREFIX_SANITIZER.sub('_', prefix)}_{next(self._counter)}"
        self.values[name] = value
        return sql.Placeholder(name)


def as_sql(fragment: str | sql.Composable) -> sql.Composable:
    """Trusted literal SQL text (never user input) or an existing fragment."""
    if isinstance(fragment, sql.Composable):
        return fragment
    return sql.SQL(fragment)


class QueryBuilder:
    """
    Accumulates one SELECT, UPDATE, DELETE or INSERT statement.

    Usage:
        qb = QueryBuilder.select_from("posts", "p")
        qb.and_where(sql.SQL("{} = {}").format(qb.column("status"), qb.bind("draft")))
        query, params = qb.build()
    """

    SELECT = "select"
    UPDATE = "update"
    DELETE = "delete"
    INSERT = "insert"

    def __init__(
        self,
        kind: str,
        table: str,
        alias: str | None = None,
        parameters: Parameters | None = None,
    ):
        self.kind = kind
        self.table = table
        self.alias = alias
        self.parameters = parameters or Parameters()
        self._columns: list[sql.Composable] = [sql.SQL("*")]
        self._joins: list[sql.Composable] = []
        self._where: list[sql.Composable] = []
        self._order_by: list[sql.Composable] = []
        self._assignments: list[tuple[str, sql.Composable]] = []
        self._returning: list[sql.Composable] = []
        self._limit: sql.Composable | None = None
        self._offset: sql.Composable | None = None

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def select_from(cls, table: str, alias: str | None = None) -> "QueryBuilder":
        return cls(cls.SELECT, table, alias)

    @classmethod
    def update(cls, table: str, alias: str | None = None) -> "QueryBuilder":
        return cls(cls.UPDATE, table, alias)

    @classmethod
    def delete(cls, table: str, alias: str | None = None) -> "QueryBuilder":
        return cls(cls.DELETE, table, alias)

    @classmethod
    def insert(cls, table: str) -> "QueryBuilder":
        return cls(cls.INSERT, table)

    def subquery(self, table: str, alias: str) -> "QueryBuilder":
        """A ``SELECT 1`` over ``table`` sharing this statement's parameters."""
        sub = QueryBuilder(self.SELECT, table, alias, parameters=self.parameters)
        sub.select("1")
        return sub

    # -------------------------------------------------------------------------
    # Building blocks
    # -------------------------------------------------------------------------

    @property
    def params(self) -> dict[str, Any]:
        return self.parameters.values

    def bind(self, value: Any, prefix: str = "p") -> sql.Placeholder:
        return self.parameters.bind(value, prefix)

    def column(self, name: str, alias: str | None = None) -> sql.Identifier:
        """``alias.name`` using the given alias, this statement's alias, or none."""
        qualifier = alias or self.alias
        if qualifier:
            return sql.Identifier(qualifier, name)
        return sql.Identifier(name)

    def select(self, *columns: str | sql.Composable) -> "QueryBuilder":
        self._columns = [as_sql(c) for c in columns]
        return self

    def join(self, table: str, alias: str, on: sql.Composable) -> "QueryBuilder":
        self._joins.append(
            sql.SQL("JOIN {} AS {} ON {}").format(
                sql.Identifier(table), sql.Identifier(alias), on
            )
        )
        return self

    def and_where(self, predicate: str | sql.Composable) -> "QueryBuilder":
        self._where.append(as_sql(predicate))
        return self

    def order_by(self, column: sql.Composable, direction: str = "ASC") -> "QueryBuilder":
        self._order_by.append(sql.SQL("{} {}").format(column, sql.SQL(direction)))
        return self

    def set(self, column: str, value: Any, prefix: str = "set") -> "QueryBuilder":
        self._assignments.append((column, self.bind(value, prefix)))
        return self

    def values(self, data: Mapping[str, Any]) -> "QueryBuilder":
        for column, value in data.items():
            self.set(column, value, prefix="val")
        return self

    def returning(self, *columns: str) -> "QueryBuilder":
        self._returning = [sql.Identifier(c) for c in columns]
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self._limit = self.bind(count, "limit")
        return self

    def offset(self, count: int) -> "QueryBuilder":
        self._offset = self.bind(count, "offset")
        return self

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def _target(self) -> sql.Composable:
        if self.alias:
            return sql.SQL("{} AS {}").format(sql.Identifier(self.table), sql.Identifier(self.alias))
        return sql.Identifier(self.table)

    def _where_clause(self) -> list[sql.Composable]:
        if not self._where:
            return []
        return [sql.SQL("WHERE"), sql.SQL(" AND ").join(self._where)]

    def as_sql(self) -> sql.Composed:
        """The statement text without its parameters."""
        if self.kind == self.SELECT:
            parts = [
                sql.SQL("SELECT"),
                sql.SQL(", ").join(self._columns),
                sql.SQL("FROM"),
                self._target(),
                *self._joins,
                *self._where_clause(),
            ]
            if self._order_by:
                parts += [sql.SQL("ORDER BY"), sql.SQL(", ").join(self._order_by)]
            if self._limit is not None:
                parts += [sql.SQL("LIMIT"), self._limit]
            if self._offset is not None:
                parts += [sql.SQL("OFFSET"), self._offset]
        elif self.kind == self.UPDATE:
            assignments = [
                sql.SQL("{} = {}").format(sql.Identifier(column), placeholder)
                for column, placeholder in self._assignments
            ]
            parts = [
                sql.SQL("UPDATE"),
                self._target(),
                sql.SQL("SET"),
                sql.SQL(", ").join(assignments),
                *self._where_clause(),
            ]
        elif self.kind == self.DELETE:
            parts = [sql.SQL("DELETE FROM"), self._target(), *self._where_clause()]
        elif self.kind == self.INSERT:
            columns = [sql.Identifier(column) for column, _ in self._assignments]
            placeholders = [placeholder for _, placeholder in self._assignments]
            if columns:
                parts = [
                    sql.SQL("INSERT INTO"),
                    self._target(),
                    sql.SQL("({}) VALUES ({})").format(
                        sql.SQL(", ").join(columns), sql.SQL(", ").join(placeholders)
                    ),
                ]
            else:
                parts = [sql.SQL("INSERT INTO"), self._target(), sql.SQL("DEFAULT VALUES")]
        else:
            raise ValueError(f"Unknown statement kind: {self.kind}")

        if self._returning and self.kind != self.SELECT:
            parts += [sql.SQL("RETURNING"), sql.SQL(", ").join(self._returning)]
        return sql.SQL(" ").join(parts)

    def build(self) -> tuple[sql.Composed, dict[str, Any]]:
        return self.as_sql(), self.params


def insert_statement(table: str, columns: Iterable[str]) -> sql.Composed:
    """
    INSERT with one ``%(column)s`` placeholder per column, for executemany().
    """
    columns = list(columns)
    return sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
        sql.Identifier(table),
        sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        sql.SQL(", ").join(sql.Placeholder(c) for c in columns),
    )
