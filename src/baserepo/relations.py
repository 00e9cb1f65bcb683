"""
Relation descriptors.

A repository declares its relations once, in ``define_relations()``, as a
mapping from relation name to one of four descriptors:

- :class:`BelongsTo` - the owner row holds ``foreign_key``; it matches the
  related primary key.
- :class:`HasOne` - the related row holds ``foreign_key`` pointing at the
  owner primary key; at most one related entity is attached.
- :class:`HasMany` - like ``HasOne`` but every match is attached as a list.
- :class:`BelongsToMany` - owner and related rows are linked through a
  pivot table holding ``foreign_pivot_key`` (owner side) and
  ``related_pivot_key`` (related side).

``repository`` is the related repository itself, or a zero-argument callable
returning it (useful when two repositories reference each other). A relation
whose repository resolves to ``None`` is treated as unwired and skipped.

``setter`` is the attribute name to assign on the owner, or a callable
``setter(owner, value)``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol, Union, runtime_checkable

from baserepo.criteria import assert_safe_identifier


class RelationKind(str, Enum):
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO_MANY = "belongs_to_many"


@runtime_checkable
class RelatedRepository(Protocol):
    """What a repository must offer to be the target of a relation."""

    @property
    def table_name(self) -> str: ...

    @property
    def primary_key(self) -> str: ...

    def with_(self, relations: Iterable[str]) -> RelatedRepository: ...

    def find_by(
        self,
        criteria: Mapping[str, Any],
        order_by: Mapping[str, str] | None = None,
        page_size: int | None = None,
        page_number: int | None = None,
    ) -> list[Any]: ...

    def find_by_pivot(
        self,
        pivot_table: str,
        foreign_pivot_key: str,
        related_pivot_key: str,
        owner_keys: list[Any],
        order_by: Mapping[str, str] | None = None,
    ) -> list[tuple[Any, Any]]: ...


RepositoryRef = Union[RelatedRepository, Callable[[], "RelatedRepository | None"], None]
Setter = Union[str, Callable[[Any, Any], None]]


@dataclass(frozen=True)
class CompiledRelation:
    """A relation resolved into the table and column names SQL needs."""

    kind: RelationKind
    related_table: str
    related_primary_key: str
    foreign_key: str | None = None
    pivot_table: str | None = None
    foreign_pivot_key: str | None = None
    related_pivot_key: str | None = None


class Relation:
    kind: RelationKind
    repository: RepositoryRef
    setter: Setter
    order_by: Mapping[str, str]

    def _validate(self, *identifiers: str) -> None:
        for identifier in identifiers:
            assert_safe_identifier(identifier)
        if not callable(self.setter):
            assert_safe_identifier(self.setter)
        for column in self.order_by:
            assert_safe_identifier(column)
        # Freeze the ordering so the descriptor stays immutable
        object.__setattr__(self, "order_by", MappingProxyType(dict(self.order_by)))

    def resolve_repository(self) -> RelatedRepository | None:
        ref = self.repository
        if ref is None or isinstance(ref, RelatedRepository):
            return ref
        if callable(ref):
            return ref()
        return None

    def attach(self, owner: Any, value: Any) -> None:
        if callable(self.setter):
            self.setter(owner, value)
        else:
            setattr(owner, self.setter, value)

    def compile(self) -> CompiledRelation | None:
        related = self.resolve_repository()
        if related is None:
            return None
        return self._compile(related)

    def _compile(self, related: RelatedRepository) -> CompiledRelation:
        return CompiledRelation(
            kind=self.kind,
            related_table=related.table_name,
            related_primary_key=related.primary_key,
            foreign_key=getattr(self, "foreign_key", None),
        )


@dataclass(frozen=True)
class BelongsTo(Relation):
    repository: RepositoryRef
    foreign_key: str
    setter: Setter
    order_by: Mapping[str, str] = field(default_factory=dict)

    kind = RelationKind.BELONGS_TO

    def __post_init__(self):
        self._validate(self.foreign_key)


@dataclass(frozen=True)
class HasOne(Relation):
    repository: RepositoryRef
    foreign_key: str
    setter: Setter
    order_by: Mapping[str, str] = field(default_factory=dict)

    kind = RelationKind.HAS_ONE

    def __post_init__(self):
        self._validate(self.foreign_key)


@dataclass(frozen=True)
class HasMany(Relation):
    repository: RepositoryRef
    foreign_key: str
    setter: Setter
    order_by: Mapping[str, str] = field(default_factory=dict)

    kind = RelationKind.HAS_MANY

    def __post_init__(self):
        self._validate(self.foreign_key)


@dataclass(frozen=True)
class BelongsToMany(Relation):
    repository: RepositoryRef
    pivot_table: str
    foreign_pivot_key: str
    related_pivot_key: str
    setter: Setter
    order_by: Mapping[str, str] = field(default_factory=dict)

    kind = RelationKind.BELONGS_TO_MANY

    def __post_init__(self):
        self._validate(self.pivot_table, self.foreign_pivot_key, self.related_pivot_key)

    def _compile(self, related: RelatedRepository) -> CompiledRelation:
        return CompiledRelation(
            kind=self.kind,
            related_table=related.table_name,
            related_primary_key=related.primary_key,
            pivot_table=self.pivot_table,
            foreign_pivot_key=self.foreign_pivot_key,
            related_pivot_key=self.related_pivot_key,
        )
