"""Persistence contract for the backfill, plus a SQL implementation.

The pipeline only talks to the ``Repository`` protocol. ``SqlRepository``
implements it over any SQLAlchemy engine with parameterized ``text()``
statements; table and column names are validated as plain identifiers
before they are interpolated.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from sqlalchemy import String, cast, column, inspect, select
from sqlalchemy import table as sql_table
from sqlalchemy.engine import Engine
from sqlmodel import Session, text

from fieldvault.models.field_spec import validate_identifier

logger = logging.getLogger(__name__)

Record = dict[str, Any]


class SchemaMismatch(Exception):
    """A configured field or its sibling column does not exist."""


class Repository(Protocol):
    primary_key: str

    def list_columns(self, table: str) -> list[str]: ...

    def text_columns(self, table: str) -> list[str]: ...

    def count(self, table: str) -> int: ...

    def max_key(self, table: str) -> Any: ...

    def fetch_chunk(self, table: str, after_key: Any, limit: int) -> list[Record]: ...

    def update(self, table: str, key: Any, fields: Mapping[str, Any]) -> None: ...

    def find_by_hash(self, table: str, hash_column: str, digest: str) -> list[Any]: ...

    def resolve_keys(self, table: str, ids: Sequence[str]) -> list[Any]: ...


class SqlRepository:
    """Row access through SQLAlchemy, one short transaction per write."""

    __slots__ = ("engine", "primary_key")

    def __init__(self, engine: Engine, primary_key: str = "id") -> None:
        self.engine = engine
        self.primary_key = validate_identifier(primary_key)

    def _reflect(self, table: str) -> list[dict[str, Any]]:
        validate_identifier(table)
        insp = inspect(self.engine)
        if not insp.has_table(table):
            raise SchemaMismatch(f"Table {table!r} does not exist")
        return insp.get_columns(table)

    def list_columns(self, table: str) -> list[str]:
        return [c["name"] for c in self._reflect(table)]

    def text_columns(self, table: str) -> list[str]:
        """Columns declared as CHAR, VARCHAR, TEXT or another string type."""
        return [c["name"] for c in self._reflect(table) if isinstance(c["type"], String)]

    def count(self, table: str) -> int:
        validate_identifier(table)
        with Session(self.engine) as session:
            return session.exec(text(f"SELECT COUNT(*) FROM {table}")).one()[0]

    def max_key(self, table: str) -> Any:
        validate_identifier(table)
        with Session(self.engine) as session:
            return session.exec(
                text(f"SELECT MAX({self.primary_key}) FROM {table}")
            ).one()[0]

    def fetch_chunk(self, table: str, after_key: Any, limit: int) -> list[Record]:
        """Next ``limit`` rows ordered by primary key, strictly after ``after_key``.

        Keyset pagination: rows are never skipped or repeated when earlier
        rows change, unlike OFFSET paging.
        """
        validate_identifier(table)
        pk = self.primary_key
        if after_key is None:
            stmt = text(f"SELECT * FROM {table} ORDER BY {pk} LIMIT :limit").bindparams(
                limit=limit
            )
        else:
            stmt = text(
                f"SELECT * FROM {table} WHERE {pk} > :after ORDER BY {pk} LIMIT :limit"
            ).bindparams(after=after_key, limit=limit)
        with Session(self.engine) as session:
            result = session.exec(stmt)
            return [dict(row._mapping) for row in result]

    def update(self, table: str, key: Any, fields: Mapping[str, Any]) -> None:
        if not fields:
            return
        validate_identifier(table)
        assignments = []
        params: dict[str, Any] = {"key": key}
        for i, (column, value) in enumerate(fields.items()):
            validate_identifier(column)
            assignments.append(f"{column} = :v{i}")
            params[f"v{i}"] = value
        stmt = text(
            f"UPDATE {table} SET {', '.join(assignments)} WHERE {self.primary_key} = :key"
        ).bindparams(**params)
        with Session(self.engine) as session:
            session.exec(stmt)
            session.commit()

    def find_by_hash(self, table: str, hash_column: str, digest: str) -> list[Any]:
        validate_identifier(table)
        validate_identifier(hash_column)
        pk = self.primary_key
        stmt = text(
            f"SELECT {pk} FROM {table} WHERE {hash_column} = :digest ORDER BY {pk}"
        ).bindparams(digest=digest)
        with Session(self.engine) as session:
            return [row[0] for row in session.exec(stmt)]

    def resolve_keys(self, table: str, ids: Sequence[str]) -> list[Any]:
        """Map index document ids back to primary key values.

        Keeps the order of ``ids`` and drops ids with no matching row.
        """
        if not ids:
            return []
        validate_identifier(table)
        pk = column(self.primary_key)
        stmt = select(pk).select_from(sql_table(table)).where(cast(pk, String).in_(list(ids)))
        with Session(self.engine) as session:
            by_id = {str(row[0]): row[0] for row in session.exec(stmt)}
        return [by_id[i] for i in dict.fromkeys(ids) if i in by_id]
