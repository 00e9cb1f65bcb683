"""
Relation filters as correlated ``EXISTS`` subqueries.

Criteria keys written as ``relation.field`` filter owners by their related
rows: ``{"comments.status": "approved"}`` keeps owners with at least one
approved comment. A leading ``!`` (``"!comments.status"``) keeps owners with
none. Field values use the same grammar as base-table criteria.
"""

import logging
import re
from collections.abc import Mapping
from typing import Any

from psycopg import sql

from baserepo.criteria import assert_safe_identifier, build_predicate
from baserepo.query import QueryBuilder
from baserepo.relations import CompiledRelation, RelationKind

logger = logging.getLogger(__name__)

NOT_EXISTS_PREFIX = "!"

_ALIAS_SANITIZER = re.compile(r"[^A-Za-z0-9_]")


def parse_relation_key(key: str) -> tuple[str, str, bool] | None:
    """
    Split ``[!]relation.field`` into ``(relation, field, negated)``.

    Returns None for keys without a dot.
    """
    if "." not in key:
        return None
    relation, field = key.split(".", 1)
    negated = relation.startswith(NOT_EXISTS_PREFIX)
    if negated:
        relation = relation[len(NOT_EXISTS_PREFIX):]
    return relation, field, negated


def split_criteria(
    criteria: Mapping[str, Any],
    relations: Mapping[str, Any],
) -> tuple[dict[str, Any], dict[str, dict[str, Any]]]:
    """
    Partition criteria into base-table criteria and relation criteria.

    Relation criteria are grouped by relation name, keeping the ``!`` prefix
    on the group key for NOT EXISTS. A dotted key whose relation is not in
    ``relations`` stays in the base criteria untouched.
    """
    base: dict[str, Any] = {}
    grouped: dict[str, dict[str, Any]] = {}

    for key, value in criteria.items():
        parsed = parse_relation_key(key)
        if parsed is not None:
            relation, field, negated = parsed
            if field != "" and relation in relations:
                group = NOT_EXISTS_PREFIX + relation if negated else relation
                grouped.setdefault(group, {})[field] = value
                continue
        base[key] = value

    return base, grouped


class RelationCriteriaCompiler:
    """
    Turns grouped relation criteria into EXISTS / NOT EXISTS predicates.
    """

    def apply(
        self,
        qb: QueryBuilder,
        base_alias: str,
        base_primary_key: str,
        compiled_relations: Mapping[str, CompiledRelation],
        relation_criteria: Mapping[str, Mapping[str, Any]],
    ) -> QueryBuilder:
        for key, fields in relation_criteria.items():
            negated = key.startswith(NOT_EXISTS_PREFIX)
            relation = key[len(NOT_EXISTS_PREFIX):] if negated else key

            compiled = compiled_relations.get(relation)
            if compiled is None:
                logger.debug("Skipping filter on unresolved relation %r", relation)
                continue

            built = self._correlated_subquery(qb, relation, compiled, base_alias, base_primary_key)
            if built is None:
                logger.debug("Skipping filter on relation %r of kind %s", relation, compiled.kind)
                continue

            sub, related_alias = built
            for field, value in fields.items():
                if field == "":
                    continue
                assert_safe_identifier(field)
                column = sql.Identifier(related_alias, field)
                sub.and_where(build_predicate(sub, column, value, prefix=f"rel_{relation}"))

            template = "NOT EXISTS ({})" if negated else "EXISTS ({})"
            qb.and_where(sql.SQL(template).format(sub.as_sql()))

        return qb

    def _correlated_subquery(
        self,
        qb: QueryBuilder,
        relation: str,
        compiled: CompiledRelation,
        base_alias: str,
        base_primary_key: str,
    ) -> tuple[QueryBuilder, str] | None:
        """The subquery correlated to the owner row, and the alias of the related table."""
        name = _ALIAS_SANITIZER.sub("_", relation)
        alias = f"rel_{name}"
        owner_pk = sql.Identifier(base_alias, base_primary_key)

        if compiled.kind == RelationKind.BELONGS_TO:
            sub = qb.subquery(compiled.related_table, alias)
            sub.and_where(
                sql.SQL("{} = {}").format(
                    sql.Identifier(alias, compiled.related_primary_key),
                    sql.Identifier(base_alias, compiled.foreign_key),
                )
            )
            return sub, alias

        if compiled.kind in (RelationKind.HAS_ONE, RelationKind.HAS_MANY):
            sub = qb.subquery(compiled.related_table, alias)
            sub.and_where(
                sql.SQL("{} = {}").format(sql.Identifier(alias, compiled.foreign_key), owner_pk)
            )
            return sub, alias

        if compiled.kind == RelationKind.BELONGS_TO_MANY:
            pivot_alias = f"piv_{name}"
            sub = qb.subquery(compiled.pivot_table, pivot_alias)
            sub.join(
                compiled.related_table,
                alias,
                sql.SQL("{} = {}").format(
                    sql.Identifier(alias, compiled.related_primary_key),
                    sql.Identifier(pivot_alias, compiled.related_pivot_key),
                ),
            )
            sub.and_where(
                sql.SQL("{} = {}").format(
                    sql.Identifier(pivot_alias, compiled.foreign_pivot_key), owner_pk
                )
            )
            return sub, alias

        return None
