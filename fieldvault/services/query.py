"""Query resolver: find records by encrypted field values.

Exact match compares salted digests against ``<field>_hash``. Partial
match asks the external index; when it is down or finds nothing, the
resolver falls back to exact match. Nothing here decrypts rows.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from fieldvault.models.field_spec import FieldSpec
from fieldvault.services.hashing import HashIndex
from fieldvault.services.repository import Repository
from fieldvault.services.search_index import IndexSyncFailure, MeilisearchIndex

logger = logging.getLogger(__name__)


class QueryResolver:
    __slots__ = ("repository", "hash_index", "search_index")

    def __init__(
        self,
        repository: Repository,
        hash_index: HashIndex,
        search_index: MeilisearchIndex | None = None,
    ) -> None:
        self.repository = repository
        self.hash_index = hash_index
        self.search_index = search_index

    def find_exact(self, table: str, field: FieldSpec, value: str) -> list[Any]:
        """Primary keys whose ``field`` equals ``value`` exactly."""
        return self.repository.find_by_hash(
            table, field.hash_column, self.hash_index.digest(value)
        )

    def search(
        self,
        table: str,
        query: str,
        fields: Sequence[FieldSpec],
        model_type: str | None = None,
        fallback: bool = True,
    ) -> list[Any]:
        """Primary keys of records matching ``query`` on any searchable field.

        Index hits are mapped back to primary key values, so both paths
        return keys of the same type. Hits for deleted rows are dropped.
        """
        searchable = [f for f in fields if f.searchable]
        if not query.strip() or not searchable:
            return []

        if self.search_index is not None and self.search_index.enabled:
            index = self.search_index.index_name(model_type or table)
            try:
                hits = self.search_index.search(index, query)
            except IndexSyncFailure:
                logger.info("Search index unavailable, using hash lookup fallback", exc_info=True)
            else:
                keys = self.repository.resolve_keys(table, hits)
                if keys:
                    return keys

        if not fallback:
            return []

        keys: list[Any] = []
        for spec in searchable:
            keys.extend(self.find_exact(table, spec, query))
        return list(dict.fromkeys(keys))
