"""Explicit persistence-boundary hooks for application writes.

A repository layer calls these around its own save/load/delete instead of
relying on framework event binding. Search-index updates go through the
sync worker's queue, so they never add latency to the write itself.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from fieldvault.models.field_spec import FieldSpec
from fieldvault.services.envelope import EncryptionFailure
from fieldvault.services.search_document import build_search_document
from fieldvault.services.search_index import MeilisearchIndex
from fieldvault.services.transform import FieldTransformer, RecordOutcome, RecordUpdate
from fieldvault.worker import IndexSyncWorker


class RecordHooks:
    __slots__ = ("transformer", "fields", "model_type", "_index_name", "_sync_worker")

    def __init__(
        self,
        transformer: FieldTransformer,
        fields: Sequence[FieldSpec],
        model_type: str,
        search_index: MeilisearchIndex | None = None,
        sync_worker: IndexSyncWorker | None = None,
    ) -> None:
        self.transformer = transformer
        self.fields = list(fields)
        self.model_type = model_type
        self._sync_worker = sync_worker
        self._index_name = (
            search_index.index_name(model_type)
            if search_index is not None and sync_worker is not None
            else None
        )

    def on_write(
        self,
        key: Any,
        record: Mapping[str, Any],
        backup: bool = False,
    ) -> RecordUpdate:
        """Column updates to persist with this write; queues the search document.

        Raises EncryptionFailure rather than letting plaintext through.
        """
        result = self.transformer.transform(record, self.fields, backup=backup)
        if result.outcome is RecordOutcome.ERRORED:
            raise EncryptionFailure("; ".join(result.errors))
        if result.outcome is RecordOutcome.ENCRYPTED and self._index_name is not None:
            document = build_search_document(
                key, self.model_type, self.fields, result.plaintext, result.hashes
            )
            if document is not None:
                self._sync_worker.push(self._index_name, document)
        return result.updates

    def on_read(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Plaintext view of a loaded record."""
        return self.transformer.on_read(record, self.fields)

    def on_delete(self, key: Any) -> None:
        if self._index_name is not None:
            self._sync_worker.remove(self._index_name, str(key))
