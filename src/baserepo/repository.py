"""
Repository facade.

Subclass :class:`Repository` once per table:

    class PostRepository(Repository):
        table = "posts"
        model = Post
        deleted_at_column = "deleted_at"

        def __init__(self, database, author_repository):
            self.author_repository = author_repository
            super().__init__(database)

        def define_relations(self):
            return {
                "author": BelongsTo(self.author_repository, "author_id", setter="author"),
            }

    posts = PostRepository(Database(conn), AuthorRepository(Database(conn)))
    post = posts.with_(["author"]).find(1)

Reads apply the soft-delete default visibility, base and relation criteria,
map rows through the model mapper, and then eager-load whatever relations
were queued with ``with_()``.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from decimal import Decimal
from itertools import groupby
from types import MappingProxyType
from typing import Any, TypeVar

from psycopg import sql

from baserepo.config import config
from baserepo.criteria import CriteriaCompiler, assert_safe_identifier, in_list_predicate
from baserepo.db import Database
from baserepo.eager import EagerLoader
from baserepo.exceptions import RecordNotFoundAfterWriteError
from baserepo.mapper import ModelMapper
from baserepo.query import QueryBuilder, insert_statement
from baserepo.relation_criteria import RelationCriteriaCompiler, parse_relation_key, split_criteria
from baserepo.relations import CompiledRelation, Relation
from baserepo.soft_delete import SoftDeletePolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

PIVOT_KEY_COLUMN = "__pivot_owner_key"


class Repository:
    """
    Base class for table repositories.

    Class attributes configure the table:
        table: Table name
        model: Model class whose ``mapper_method`` builds entities from rows
        table_alias: Alias used in queries, defaults to the table's first letter
        primary_key: Primary key column, ``"id"`` by default
        deleted_at_column: Soft-delete timestamp column, or None to disable
        mapper_method: Factory name on ``model``, ``"from_row"`` by default
    """

    table: str
    model: Any = None
    table_alias: str | None = None
    primary_key: str = "id"
    deleted_at_column: str | None = None
    mapper_method: str = "from_row"

    def __init__(self, database: Database, mapper: Callable[[dict[str, Any]], Any] | None = None):
        self.db = database
        assert_safe_identifier(self.table)
        assert_safe_identifier(self.primary_key)
        self.alias = assert_safe_identifier(self.table_alias or self.table[0])

        self.mapper = mapper or ModelMapper(self.model, self.mapper_method)
        self.criteria_compiler = CriteriaCompiler(self.alias)
        self.relation_criteria_compiler = RelationCriteriaCompiler()
        self.eager_loader = EagerLoader()
        self.soft_delete: SoftDeletePolicy | None = None
        if self.deleted_at_column is not None:
            self.soft_delete = SoftDeletePolicy(assert_safe_identifier(self.deleted_at_column))

        self._pending_relations: list[str] = []
        self._relations: Mapping[str, Relation] = MappingProxyType(dict(self.define_relations()))

    def define_relations(self) -> Mapping[str, Relation]:
        """Relation descriptors by name. Override in subclasses."""
        return {}

    @property
    def relations(self) -> Mapping[str, Relation]:
        return self._relations

    @property
    def table_name(self) -> str:
        return self.table

    def map_row(self, row: dict[str, Any]) -> Any:
        return self.mapper(row)

    # =========================================================================
    # Query building
    # =========================================================================

    def select(self) -> QueryBuilder:
        """``SELECT * FROM table AS alias``."""
        return QueryBuilder.select_from(self.table, self.alias)

    def _visible(self, criteria: Mapping[str, Any] | None) -> dict[str, Any]:
        criteria = dict(criteria or {})
        if self.soft_delete:
            criteria = self.soft_delete.apply_default_visibility(criteria)
        return criteria

    def compile_relations(self) -> dict[str, CompiledRelation]:
        """Resolve relation descriptors against the related repositories."""
        compiled = {}
        for name, relation in self._relations.items():
            resolved = relation.compile()
            if resolved is not None:
                compiled[name] = resolved
        return compiled

    def apply_criteria(self, qb: QueryBuilder, criteria: Mapping[str, Any]) -> QueryBuilder:
        if self.soft_delete:
            # "*" is never a column value; writes may use it to include deleted rows
            criteria = self.soft_delete.strip_show_all(criteria)
        base, relation_criteria = split_criteria(criteria, self._relations)

        for key in list(base):
            parsed = parse_relation_key(key)
            if parsed is not None:
                logger.warning(
                    "Ignoring filter %r: %r is not a relation of %s", key, parsed[0], self.table
                )
                del base[key]

        self.criteria_compiler.compile(qb, base)

        if relation_criteria:
            self.relation_criteria_compiler.apply(
                qb,
                self.alias,
                self.primary_key,
                self.compile_relations(),
                relation_criteria,
            )
        return qb

    def apply_order_by(self, qb: QueryBuilder, order_by: Mapping[str, str]) -> None:
        self.criteria_compiler.compile_order_by(qb, order_by)

    # =========================================================================
    # Eager loading
    # =========================================================================

    def with_(self, relations: Iterable[str] | str) -> "Repository":
        """
        Queue relation paths to eager-load on the next fetch.

        The queue is consumed by the next ``find*`` call, whether or not it
        finds anything.
        """
        if isinstance(relations, str):
            relations = [relations]
        if self._relations:
            self._pending_relations = list(relations)
        return self

    def _take_pending_relations(self) -> list[str]:
        paths, self._pending_relations = self._pending_relations, []
        return paths

    def load_relations(self, items: list[Any], paths: Iterable[str]) -> list[Any]:
        """Eager-load ``paths`` onto already fetched ``items``."""
        paths = list(paths)
        if not items or not paths or not self._relations:
            return items
        logger.debug("Eager loading %s for %d %s rows", paths, len(items), self.table)
        self.eager_loader.resolve(items, paths, self._relations, self.primary_key)
        return items

    # =========================================================================
    # Reads
    # =========================================================================

    def find(self, id: Any) -> Any | None:
        return self.find_one_by({self.primary_key: id})

    def find_one_by(
        self,
        criteria: Mapping[str, Any],
        order_by: Mapping[str, str] | None = None,
    ) -> Any | None:
        paths = self._take_pending_relations()

        qb = self.apply_criteria(self.select(), self._visible(criteria))
        if order_by:
            self.apply_order_by(qb, order_by)
        qb.limit(1)

        row = self.db.fetch_one(*qb.build())
        if row is None:
            return None

        item = self.map_row(row)
        self.load_relations([item], paths)
        return item

    def find_all(self) -> list[Any]:
        return self.find_by({})

    def find_by(
        self,
        criteria: Mapping[str, Any],
        order_by: Mapping[str, str] | None = None,
        page_size: int | None = None,
        page_number: int | None = None,
    ) -> list[Any]:
        paths = self._take_pending_relations()

        qb = self.apply_criteria(self.select(), self._visible(criteria))
        if order_by:
            self.apply_order_by(qb, order_by)
        if page_size is not None:
            qb.limit(page_size)
            qb.offset(((page_number or 1) - 1) * page_size)

        items = [self.map_row(row) for row in self.db.fetch_all(*qb.build())]
        return self.load_relations(items, paths)

    def find_by_pivot(
        self,
        pivot_table: str,
        foreign_pivot_key: str,
        related_pivot_key: str,
        owner_keys: list[Any],
        order_by: Mapping[str, str] | None = None,
    ) -> list[tuple[Any, Any]]:
        """
        Entities linked to ``owner_keys`` through a pivot table, in one JOIN.

        Returns:
            ``(owner_key, entity)`` pairs, one per pivot row
        """
        paths = self._take_pending_relations()
        for identifier in (pivot_table, foreign_pivot_key, related_pivot_key):
            assert_safe_identifier(identifier)

        pivot_alias = f"{self.alias}_pivot"
        owner_key = sql.Identifier(pivot_alias, foreign_pivot_key)

        qb = self.select()
        qb.select(
            sql.SQL("{} AS {}").format(owner_key, sql.Identifier(PIVOT_KEY_COLUMN)),
            sql.SQL("{}.*").format(sql.Identifier(self.alias)),
        )
        qb.join(
            pivot_table,
            pivot_alias,
            sql.SQL("{} = {}").format(
                qb.column(self.primary_key), sql.Identifier(pivot_alias, related_pivot_key)
            ),
        )
        qb.and_where(in_list_predicate(qb, owner_key, owner_keys))
        self.apply_criteria(qb, self._visible({}))
        if order_by:
            self.apply_order_by(qb, order_by)

        pairs = []
        for row in self.db.fetch_all(*qb.build()):
            key = row.pop(PIVOT_KEY_COLUMN)
            pairs.append((key, self.map_row(row)))

        self.load_relations([item for _, item in pairs], paths)
        return pairs

    def exists(self, criteria: Mapping[str, Any]) -> bool:
        qb = self.apply_criteria(self.select(), self._visible(criteria))
        qb.select("1").limit(1)
        return self.db.fetch_value(*qb.build()) is not None

    def count(self, criteria: Mapping[str, Any] | None = None) -> int:
        qb = self.apply_criteria(self.select(), self._visible(criteria))
        qb.select("COUNT(*)")
        return int(self.db.fetch_value(*qb.build()))

    def sum(self, column: str, criteria: Mapping[str, Any] | None = None) -> float | None:
        return self._to_float(self.aggregate("SUM", column, criteria))

    def avg(self, column: str, criteria: Mapping[str, Any] | None = None) -> float | None:
        return self._to_float(self.aggregate("AVG", column, criteria))

    def min(self, column: str, criteria: Mapping[str, Any] | None = None) -> Any:
        return self.aggregate("MIN", column, criteria)

    def max(self, column: str, criteria: Mapping[str, Any] | None = None) -> Any:
        return self.aggregate("MAX", column, criteria)

    def aggregate(self, function: str, column: str, criteria: Mapping[str, Any] | None = None) -> Any:
        assert_safe_identifier(column)
        if function not in ("SUM", "AVG", "MIN", "MAX", "COUNT"):
            raise ValueError(f"Unsupported aggregate: {function}")

        qb = self.apply_criteria(self.select(), self._visible(criteria))
        qb.select(sql.SQL("{}({})").format(sql.SQL(function), qb.column(column)))
        return self.db.fetch_value(*qb.build())

    @staticmethod
    def _to_float(value: Any) -> Any:
        # Convert decimal.Decimal to float for numeric compatibility
        if isinstance(value, Decimal):
            return float(value)
        return value

    # =========================================================================
    # Writes
    # =========================================================================

    def create(self, data: Mapping[str, Any]) -> Any:
        """
        Insert a row and return it as an entity.

        A primary key present in ``data`` is kept as given; otherwise the
        generated one is read back with ``RETURNING``.
        """
        for column in data:
            assert_safe_identifier(column)

        qb = QueryBuilder.insert(self.table).values(data).returning(self.primary_key)
        row = self.db.fetch_one(*qb.build())

        id = data[self.primary_key] if self.primary_key in data else row[self.primary_key]
        return self.find(id)

    def insert_many(self, records: list[Mapping[str, Any]]) -> int:
        """
        Insert many rows in one transaction.

        Consecutive records with the same columns share one statement, sent
        in chunks of ``config.insert_chunk_size``.

        Returns:
            Number of rows inserted
        """
        if not records:
            return 0

        for record in records:
            for column in record:
                assert_safe_identifier(column)

        def insert_all() -> int:
            affected = 0
            for columns, group in groupby(records, key=lambda r: tuple(r)):
                statement = insert_statement(self.table, columns)
                affected += self.db.execute_many(
                    statement, [dict(r) for r in group], page_size=config.insert_chunk_size
                )
            return affected

        return self.db.run_in_transaction(insert_all)

    def update(self, id: Any, data: Mapping[str, Any]) -> Any:
        """
        Update one row by primary key and return the re-read entity.

        Raises:
            RecordNotFoundAfterWriteError: if the row cannot be read back
        """
        self.update_by({self.primary_key: id}, data)

        item = self.find(id)
        if item is None:
            raise RecordNotFoundAfterWriteError(self.table, id)
        return item

    def update_by(self, criteria: Mapping[str, Any], data: Mapping[str, Any]) -> int:
        if not data:
            return 0

        qb = QueryBuilder.update(self.table, self.alias)
        for column, value in data.items():
            qb.set(assert_safe_identifier(column), value)
        self.apply_criteria(qb, criteria)
        return self.db.execute(*qb.build())

    def delete(self, id: Any) -> int:
        if self.soft_delete:
            return self.update_by({self.primary_key: id}, self.soft_delete.soft_delete_payload())
        return self.force_delete(id)

    def delete_by(self, criteria: Mapping[str, Any]) -> int:
        if self.soft_delete:
            return self.update_by(criteria, self.soft_delete.soft_delete_payload())
        return self.force_delete_by(criteria)

    def force_delete(self, id: Any) -> int:
        return self.force_delete_by({self.primary_key: id})

    def force_delete_by(self, criteria: Mapping[str, Any]) -> int:
        qb = self.apply_criteria(QueryBuilder.delete(self.table, self.alias), criteria)
        return self.db.execute(*qb.build())

    def restore(self, id: Any) -> int:
        if self.soft_delete:
            return self.update_by({self.primary_key: id}, self.soft_delete.restore_payload())
        return 0

    # =========================================================================
    # Transactions
    # =========================================================================

    def begin_transaction(self) -> bool:
        return self.db.begin()

    def commit(self) -> bool:
        self.db.commit()
        return True

    def roll_back(self) -> bool:
        self.db.rollback()
        return True

    def in_transaction(self) -> bool:
        return self.db.in_transaction()

    def with_transaction(self, callback: Callable[["Repository"], T]) -> T:
        """
        Run ``callback(self)`` in a transaction.

        Commits when it returns, rolls back and re-raises when it raises.
        """
        return self.db.run_in_transaction(lambda: callback(self))
