"""
baserepo

Repositories over PostgreSQL: declarative criteria, soft deletes, relation
filters and batch eager loading on top of psycopg.
"""

import logging

from baserepo.db import Database, connect, get_connection
from baserepo.exceptions import (
    InvalidIdentifierError,
    MalformedOperandError,
    MapperError,
    RecordNotFoundAfterWriteError,
    RepositoryError,
    UnsafeOperatorError,
)
from baserepo.relations import BelongsTo, BelongsToMany, HasMany, HasOne
from baserepo.repository import Repository
from baserepo.soft_delete import SHOW_ALL

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "BelongsTo",
    "BelongsToMany",
    "Database",
    "HasMany",
    "HasOne",
    "InvalidIdentifierError",
    "MalformedOperandError",
    "MapperError",
    "RecordNotFoundAfterWriteError",
    "Repository",
    "RepositoryError",
    "SHOW_ALL",
    "UnsafeOperatorError",
    "connect",
    "get_connection",
]
