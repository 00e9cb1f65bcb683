"""
Compile a criteria mapping into parameterized predicates.

A criteria mapping goes from column name to filter value:

- ``None`` matches ``IS NULL``.
- A ``(operator, operand)`` tuple applies an allow-listed operator.
- A list, set or other tuple matches any of its elements (IN semantics).
- Anything else is an equality match.

The ``search`` key takes a mapping of column to text and matches rows whose
column contains that text (``LIKE '%text%'``).

Every predicate is AND-ed onto a :class:`~baserepo.query.QueryBuilder`.
Column names must be plain identifiers and operators must be on the
allow-list; both are checked before anything is sent to the database.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from psycopg import sql

from baserepo.exceptions import InvalidIdentifierError, MalformedOperandError, UnsafeOperatorError
from baserepo.query import QueryBuilder

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

ALLOWED_OPERATORS = frozenset(
    {
        "=",
        "!=",
        "<>",
        "<",
        ">",
        "<=",
        ">=",
        "LIKE",
        "NOT LIKE",
        "ILIKE",
        "NOT ILIKE",
        "IN",
        "NOT IN",
        "BETWEEN",
    }
)

# {"search": {field: text}} matches rows whose field contains text
SEARCH_KEY = "search"

ALWAYS_FALSE = sql.SQL("1=0")
ALWAYS_TRUE = sql.SQL("1=1")


def assert_safe_identifier(identifier: Any) -> str:
    if not isinstance(identifier, str) or not IDENTIFIER_PATTERN.match(identifier):
        raise InvalidIdentifierError(identifier)
    return identifier


def normalize_operator(operator: Any) -> str:
    if not isinstance(operator, str):
        raise UnsafeOperatorError(operator, ALLOWED_OPERATORS)
    normalized = " ".join(operator.split()).upper()
    if normalized not in ALLOWED_OPERATORS:
        raise UnsafeOperatorError(operator, ALLOWED_OPERATORS)
    return normalized


def is_operator_pair(value: Any) -> bool:
    return isinstance(value, tuple) and len(value) == 2


def is_search(field: str, value: Any) -> bool:
    return field == SEARCH_KEY and isinstance(value, Mapping)


def is_value_list(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def in_list_predicate(
    qb: QueryBuilder,
    column: sql.Composable,
    values: Any,
    negate: bool = False,
    prefix: str = "w",
) -> sql.Composable:
    """
    ``column IN (...)`` as a typed array parameter.

    An empty list short-circuits to ``1=0`` (``1=1`` when negated) instead of
    emitting an invalid empty IN-list.
    """
    if not is_value_list(values):
        values = [values]
    values = list(values)

    if not values:
        return ALWAYS_TRUE if negate else ALWAYS_FALSE

    if all(_is_integer(v) for v in values):
        array = sql.SQL("{}::bigint[]").format(qb.bind(values, prefix))
    else:
        array = qb.bind([v if isinstance(v, str) else str(v) for v in values], prefix)

    if negate:
        return sql.SQL("{} <> ALL({})").format(column, array)
    return sql.SQL("{} = ANY({})").format(column, array)


def build_predicate(
    qb: QueryBuilder,
    column: sql.Composable,
    value: Any,
    prefix: str = "w",
) -> sql.Composable:
    """
    Predicate for one criteria entry against an already resolved column.

    Parameters are bound on ``qb`` so subqueries and their parent statement
    share one parameter namespace.
    """
    if value is None:
        return sql.SQL("{} IS NULL").format(column)

    if is_operator_pair(value):
        operator, operand = value
        operator = normalize_operator(operator)

        if operand is None:
            if operator == "=":
                return sql.SQL("{} IS NULL").format(column)
            if operator in ("!=", "<>"):
                return sql.SQL("{} IS NOT NULL").format(column)

        if operator in ("IN", "NOT IN"):
            return in_list_predicate(qb, column, operand, negate=operator == "NOT IN", prefix=prefix)

        if operator == "BETWEEN":
            if not is_value_list(operand) or isinstance(operand, (set, frozenset)) or len(operand) != 2:
                raise MalformedOperandError(operator, operand)
            low, high = operand
            return sql.SQL("{} BETWEEN {} AND {}").format(
                column, qb.bind(low, prefix), qb.bind(high, prefix)
            )

        return sql.SQL("{} {} {}").format(column, sql.SQL(operator), qb.bind(operand, prefix))

    if is_value_list(value):
        return in_list_predicate(qb, column, value, prefix=prefix)

    return sql.SQL("{} = {}").format(column, qb.bind(value, prefix))


class CriteriaCompiler:
    """
    Applies base-table criteria and ordering for one table alias.
    """

    def __init__(self, table_alias: str):
        self.table_alias = assert_safe_identifier(table_alias)

    def _column(self, field: str, use_alias: bool) -> sql.Identifier:
        if use_alias:
            return sql.Identifier(self.table_alias, field)
        return sql.Identifier(field)

    def compile(
        self,
        qb: QueryBuilder,
        criteria: Mapping[str, Any],
        use_alias: bool = True,
    ) -> QueryBuilder:
        # Validate everything first so a bad key never leaves a half-built query
        for field, value in criteria.items():
            if is_search(field, value):
                for search_field in value:
                    assert_safe_identifier(search_field)
            else:
                assert_safe_identifier(field)

        for field, value in criteria.items():
            if is_search(field, value):
                self._compile_search(qb, value, use_alias)
                continue
            column = self._column(field, use_alias)
            qb.and_where(build_predicate(qb, column, value))
        return qb

    def _compile_search(self, qb: QueryBuilder, search: Mapping[str, Any], use_alias: bool) -> None:
        """``field LIKE '%text%'`` per entry; None and empty text are skipped."""
        for field, text in search.items():
            if text is None or text == "":
                continue
            pattern = qb.bind(f"%{text}%", "search")
            qb.and_where(sql.SQL("{} LIKE {}").format(self._column(field, use_alias), pattern))

    def compile_order_by(self, qb: QueryBuilder, order_by: Mapping[str, str]) -> None:
        for field, direction in order_by.items():
            assert_safe_identifier(field)
            direction = "DESC" if str(direction).upper() == "DESC" else "ASC"
            qb.order_by(sql.Identifier(self.table_alias, field), direction)
