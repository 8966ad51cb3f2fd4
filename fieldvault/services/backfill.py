"""Backfill pipeline: encrypt existing plaintext rows in place, chunk by chunk.

Scans a table in primary-key order with keyset pagination, runs the field
transform on every row, writes the resulting updates and queues a search
document for each encrypted row. Each chunk commits on its own: cancelling
or crashing mid-run leaves earlier chunks encrypted, and re-running picks
up where it left off because already-encrypted values are skipped.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fieldvault.models.backfill import BackfillRequest
from fieldvault.services.repository import Record, Repository, SchemaMismatch
from fieldvault.services.search_document import build_search_document
from fieldvault.services.search_index import MeilisearchIndex, default_index_settings
from fieldvault.services.transform import FieldTransformer, RecordOutcome, TransformResult
from fieldvault.worker import IndexSyncWorker

logger = logging.getLogger(__name__)

DEFAULT_SYNC_DRAIN_SECONDS = 30.0


class RunState(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class BackfillCounters:
    total: int = 0
    encrypted: int = 0
    skipped: int = 0
    errored: int = 0

    def record(self, outcome: RecordOutcome) -> None:
        self.total += 1
        if outcome is RecordOutcome.ENCRYPTED:
            self.encrypted += 1
        elif outcome is RecordOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.errored += 1

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "encrypted": self.encrypted,
            "skipped": self.skipped,
            "errored": self.errored,
        }


@dataclass(frozen=True, slots=True)
class ChunkProgress:
    """Reported after every chunk, e.g. to drive a progress bar."""

    chunk: int
    records: int
    last_key: Any
    expected: int
    counters: dict[str, int]


@dataclass
class BackfillReport:
    state: RunState
    counters: BackfillCounters
    dry_run: bool
    expected: int = 0  # row count when the run started
    high_water_mark: Any = None
    chunks: int = 0
    index_pushed: int = 0
    index_failures: int = 0
    errors: list[str] = field(default_factory=list)


class BackfillPipeline:
    """Chunked, resumable, in-place encryption of existing rows."""

    __slots__ = (
        "repository",
        "transformer",
        "search_index",
        "workers",
        "sync_workers",
        "sync_drain_seconds",
    )

    def __init__(
        self,
        repository: Repository,
        transformer: FieldTransformer,
        search_index: MeilisearchIndex | None = None,
        workers: int = 1,
        sync_workers: int = 4,
        sync_drain_seconds: float = DEFAULT_SYNC_DRAIN_SECONDS,
    ) -> None:
        self.repository = repository
        self.transformer = transformer
        self.search_index = search_index
        self.workers = max(1, workers)
        self.sync_workers = sync_workers
        self.sync_drain_seconds = sync_drain_seconds

    def validate_schema(self, request: BackfillRequest) -> None:
        """Fail before touching any row if a configured column is missing."""
        columns = set(self.repository.list_columns(request.table))
        required = [self.repository.primary_key]
        for spec in request.fields:
            required.append(spec.name)
            if spec.searchable:
                required.append(spec.hash_column)
            if request.backup:
                required.append(spec.backup_column)
        missing = [c for c in required if c not in columns]
        if missing:
            raise SchemaMismatch(
                f"Table {request.table!r} is missing columns: {', '.join(missing)}. "
                "Add them before running the backfill."
            )
        # Envelopes, digests and backups are all strings
        text_columns = set(self.repository.text_columns(request.table))
        not_text = [c for c in required[1:] if c not in text_columns]
        if not_text:
            raise SchemaMismatch(
                f"Table {request.table!r} has non-text columns: {', '.join(not_text)}. "
                "Encrypted fields and their sibling columns must be string-typed."
            )

    def run(
        self,
        request: BackfillRequest,
        cancel_event: threading.Event | None = None,
        on_chunk: Callable[[ChunkProgress], None] | None = None,
    ) -> BackfillReport:
        """Encrypt every row that existed when the run started.

        Rows inserted after the run took its high-water mark are left for the
        next run. ``cancel_event`` is checked between chunks only.
        """
        self.validate_schema(request)

        expected = self.repository.count(request.table)
        high_water_mark = self.repository.max_key(request.table)
        counters = BackfillCounters()
        report = BackfillReport(
            state=RunState.COMPLETED,
            counters=counters,
            dry_run=request.dry_run,
            expected=expected,
            high_water_mark=high_water_mark,
        )
        logger.info(
            "Backfill of %s starting: %d rows, fields=%s, chunk=%d, dry_run=%s, backup=%s",
            request.table,
            expected,
            ",".join(f.name for f in request.fields),
            request.chunk_size,
            request.dry_run,
            request.backup,
        )
        if high_water_mark is None:
            logger.info("Backfill of %s: no records found, nothing to encrypt", request.table)
            return report

        sync_worker = self._start_sync(request)
        index_name = (
            self.search_index.index_name(request.document_type)
            if sync_worker is not None
            else ""
        )
        executor = ThreadPoolExecutor(max_workers=self.workers) if self.workers > 1 else None
        try:
            after_key = None
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    report.state = RunState.CANCELLED
                    logger.warning(
                        "Backfill of %s cancelled after %d chunks", request.table, report.chunks
                    )
                    break

                chunk = self.repository.fetch_chunk(request.table, after_key, request.chunk_size)
                records = [r for r in chunk if r[self.repository.primary_key] <= high_water_mark]
                if not records:
                    break

                self._process_chunk(request, records, counters, report, executor, sync_worker, index_name)
                report.chunks += 1
                after_key = records[-1][self.repository.primary_key]

                if on_chunk is not None:
                    on_chunk(
                        ChunkProgress(
                            chunk=report.chunks,
                            records=len(records),
                            last_key=after_key,
                            expected=expected,
                            counters=counters.as_dict(),
                        )
                    )
                if len(records) < len(chunk) or len(chunk) < request.chunk_size:
                    break
        finally:
            if executor is not None:
                executor.shutdown(wait=True)
            if sync_worker is not None:
                sync_worker.drain(timeout=self.sync_drain_seconds)
                sync_worker.stop()
                report.index_pushed = sync_worker.succeeded
                report.index_failures = sync_worker.failures

        logger.info(
            "Backfill of %s %s: encrypted=%d skipped=%d errored=%d total=%d%s",
            request.table,
            report.state.value,
            counters.encrypted,
            counters.skipped,
            counters.errored,
            counters.total,
            " (dry run, nothing written)" if request.dry_run else "",
        )
        return report

    def _start_sync(self, request: BackfillRequest) -> IndexSyncWorker | None:
        if (
            request.dry_run
            or not request.sync_index
            or self.search_index is None
            or not self.search_index.enabled
            or not request.searchable_fields
        ):
            return None
        self.search_index.ensure_index(
            self.search_index.index_name(request.document_type),
            default_index_settings(request.fields),
        )
        worker = IndexSyncWorker(self.search_index, workers=self.sync_workers)
        worker.start()
        return worker

    def _transform_all(
        self,
        request: BackfillRequest,
        records: list[Record],
        executor: ThreadPoolExecutor | None,
    ) -> Iterable[TransformResult]:
        def _one(record: Record) -> TransformResult:
            return self.transformer.transform(record, request.fields, backup=request.backup)

        if executor is None:
            return map(_one, records)
        return executor.map(_one, records)

    def _process_chunk(
        self,
        request: BackfillRequest,
        records: list[Record],
        counters: BackfillCounters,
        report: BackfillReport,
        executor: ThreadPoolExecutor | None,
        sync_worker: IndexSyncWorker | None,
        index_name: str,
    ) -> None:
        pk = self.repository.primary_key
        for record, result in zip(records, self._transform_all(request, records, executor)):
            key = record[pk]
            outcome = result.outcome

            if outcome is RecordOutcome.ERRORED:
                logger.warning("Record %s in %s not encrypted: %s", key, request.table, "; ".join(result.errors))
                report.errors.append(f"{key}: {'; '.join(result.errors)}")
            elif outcome is RecordOutcome.ENCRYPTED and not request.dry_run:
                try:
                    self.repository.update(request.table, key, result.updates)
                except Exception as exc:
                    logger.warning("Failed to write record %s in %s", key, request.table, exc_info=True)
                    report.errors.append(f"{key}: update failed: {exc}")
                    outcome = RecordOutcome.ERRORED
                else:
                    if sync_worker is not None:
                        document = build_search_document(
                            key, request.document_type, request.fields, result.plaintext, result.hashes
                        )
                        if document is not None:
                            sync_worker.push(index_name, document)

            counters.record(outcome)
