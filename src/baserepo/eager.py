"""
Batch eager loading of relations.

Given owners that were already fetched and relation paths such as
``["comments", "comments.user", "author"]``, every top-level relation is
loaded with a single query (BelongsToMany uses one JOIN over the pivot table)
and attached to the owners through the relation setter. Nested paths are
forwarded to the related repository so its own batch fetch resolves them,
giving one query per relation per level instead of one per owner row.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from baserepo.relations import (
    BelongsTo,
    BelongsToMany,
    HasMany,
    HasOne,
    RelatedRepository,
    Relation,
)

logger = logging.getLogger(__name__)


def group_by_top_level(paths: Iterable[Any]) -> dict[str, list[str]]:
    """
    Group relation paths by their first segment.

    Example:
        ["comments", "comments.user", "author.profile.avatar"]
        -> {"comments": ["user"], "author": ["profile.avatar"]}
    """
    grouped: dict[str, list[str]] = {}
    for path in paths:
        if not isinstance(path, str) or path == "":
            continue
        top, _, rest = path.partition(".")
        if top == "":
            continue
        nested = grouped.setdefault(top, [])
        if rest:
            nested.append(rest)
    return grouped


class EagerLoader:
    """
    Resolves relation paths for a batch of owners, mutating them in place.
    """

    group_by_top_level = staticmethod(group_by_top_level)

    def resolve(
        self,
        owners: list[Any],
        paths: Iterable[str],
        relations: Mapping[str, Relation],
        owner_primary_key: str,
    ) -> None:
        for name, nested in self.group_by_top_level(paths).items():
            relation = relations.get(name)
            if relation is None:
                logger.debug("Skipping eager load of unknown relation %r", name)
                continue

            related = relation.resolve_repository()
            if related is None:
                logger.debug("Skipping eager load of unwired relation %r", name)
                continue

            self.load_relation(owners, relation, related, owner_primary_key, nested)

    def load_relation(
        self,
        owners: list[Any],
        relation: Relation,
        related: RelatedRepository,
        owner_primary_key: str,
        nested: list[str] | None = None,
    ) -> None:
        if isinstance(relation, BelongsTo):
            self._load_belongs_to(owners, relation, related, nested)
        elif isinstance(relation, HasMany):
            self._load_has_many(owners, relation, related, owner_primary_key, nested)
        elif isinstance(relation, HasOne):
            self._load_has_one(owners, relation, related, owner_primary_key, nested)
        elif isinstance(relation, BelongsToMany):
            self._load_belongs_to_many(owners, relation, related, owner_primary_key, nested)
        else:
            logger.debug("Skipping eager load of unsupported relation %r", relation)

    @staticmethod
    def _forward_nested(related: RelatedRepository, nested: list[str] | None) -> None:
        # Queued right before the fetch so the related repository consumes it
        if nested:
            related.with_(nested)

    def _load_belongs_to(
        self,
        owners: list[Any],
        relation: BelongsTo,
        related: RelatedRepository,
        nested: list[str] | None,
    ) -> None:
        keys = list(
            dict.fromkeys(
                key
                for key in (getattr(owner, relation.foreign_key, None) for owner in owners)
                if key is not None
            )
        )
        if not keys:
            return

        self._forward_nested(related, nested)
        items = related.find_by({related.primary_key: keys})

        by_key = {getattr(item, related.primary_key): item for item in items}
        for owner in owners:
            key = getattr(owner, relation.foreign_key, None)
            if key is not None and key in by_key:
                relation.attach(owner, by_key[key])

    def _fetch_by_owner_keys(
        self,
        owners: list[Any],
        relation: HasMany | HasOne,
        related: RelatedRepository,
        owner_primary_key: str,
        nested: list[str] | None,
    ) -> list[Any]:
        owner_keys = [getattr(owner, owner_primary_key) for owner in owners]
        self._forward_nested(related, nested)
        return related.find_by({relation.foreign_key: owner_keys}, dict(relation.order_by) or None)

    def _load_has_many(
        self,
        owners: list[Any],
        relation: HasMany,
        related: RelatedRepository,
        owner_primary_key: str,
        nested: list[str] | None,
    ) -> None:
        items = self._fetch_by_owner_keys(owners, relation, related, owner_primary_key, nested)

        grouped: dict[Any, list[Any]] = {}
        for item in items:
            grouped.setdefault(getattr(item, relation.foreign_key), []).append(item)

        for owner in owners:
            relation.attach(owner, grouped.get(getattr(owner, owner_primary_key), []))

    def _load_has_one(
        self,
        owners: list[Any],
        relation: HasOne,
        related: RelatedRepository,
        owner_primary_key: str,
        nested: list[str] | None,
    ) -> None:
        items = self._fetch_by_owner_keys(owners, relation, related, owner_primary_key, nested)

        first: dict[Any, Any] = {}
        for item in items:
            first.setdefault(getattr(item, relation.foreign_key), item)

        for owner in owners:
            relation.attach(owner, first.get(getattr(owner, owner_primary_key)))

    def _load_belongs_to_many(
        self,
        owners: list[Any],
        relation: BelongsToMany,
        related: RelatedRepository,
        owner_primary_key: str,
        nested: list[str] | None,
    ) -> None:
        owner_keys = [getattr(owner, owner_primary_key) for owner in owners]
        self._forward_nested(related, nested)
        pairs = related.find_by_pivot(
            relation.pivot_table,
            relation.foreign_pivot_key,
            relation.related_pivot_key,
            owner_keys,
            dict(relation.order_by) or None,
        )

        grouped: dict[Any, list[Any]] = {}
        for owner_key, item in pairs:
            grouped.setdefault(owner_key, []).append(item)

        for owner in owners:
            relation.attach(owner, grouped.get(getattr(owner, owner_primary_key), []))
