"""Background search-index synchronizer for fieldvault.

Runs a small pool of daemon threads that drain a thread-safe queue of
index push/remove jobs. The backfill pipeline and the persistence hooks
submit jobs and return immediately, so a slow or down search service never
adds latency to an encryption write.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from queue import Empty, Queue
from typing import Any

from fieldvault.services.search_index import MeilisearchIndex

logger = logging.getLogger(__name__)


class SyncAction(str, Enum):
    PUSH = "push"
    REMOVE = "remove"


@dataclass
class SyncJob:
    action: SyncAction
    index: str
    document: dict[str, Any] | None = None  # PUSH
    doc_id: str | None = None  # REMOVE


class IndexSyncWorker:
    """Bounded pool of threads pushing documents to the search index.

    Failures are counted and logged by the index client; jobs are not
    re-queued.
    """

    __slots__ = (
        "_index",
        "_queue",
        "_threads",
        "_stop_event",
        "_workers",
        "_lock",
        "succeeded",
        "failures",
    )

    def __init__(self, index: MeilisearchIndex, workers: int = 4) -> None:
        if workers < 1:
            raise ValueError("IndexSyncWorker needs at least one thread")
        self._index = index
        self._queue: Queue[SyncJob] = Queue()
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._workers = workers
        self._lock = threading.Lock()
        self.succeeded = 0
        self.failures = 0

    def start(self) -> None:
        """Start the daemon worker threads."""
        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._run, name=f"fieldvault-sync-{i}", daemon=True
            )
            for i in range(self._workers)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Index sync worker started (%d threads)", self._workers)

    def stop(self, timeout: float = 10.0) -> None:
        """Signal the threads to stop and wait for them to finish."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Index sync worker stopped")

    def __enter__(self) -> IndexSyncWorker:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.drain()
        self.stop()

    def submit(self, job: SyncJob) -> None:
        """Put a job on the queue. Never blocks."""
        self._queue.put_nowait(job)
        logger.debug("Sync job submitted: %s %s", job.action.value, job.index)

    def push(self, index: str, document: dict[str, Any]) -> None:
        self.submit(SyncJob(action=SyncAction.PUSH, index=index, document=document))

    def remove(self, index: str, doc_id: str) -> None:
        self.submit(SyncJob(action=SyncAction.REMOVE, index=index, doc_id=doc_id))

    @property
    def pending(self) -> int:
        return self._queue.unfinished_tasks

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until every submitted job has been processed.

        Returns False if ``timeout`` elapsed first; unprocessed jobs stay queued.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(
                    "Index sync drain timed out with %d jobs pending", self.pending
                )
                return False
            if not self._threads:
                # Not started: process inline so drain() can still finish
                self._process_next(block=False)
                continue
            time.sleep(0.01)
        return True

    def _run(self) -> None:
        """Thread main loop: pull jobs from queue and dispatch."""
        while not self._stop_event.is_set():
            self._process_next(block=True)

    def _process_next(self, block: bool) -> None:
        try:
            job = self._queue.get(timeout=0.5) if block else self._queue.get_nowait()
        except Empty:
            return
        ok = False
        try:
            ok = self._process_job(job)
        except Exception:
            logger.exception("Unhandled error processing sync job %s", job.action.value)
        finally:
            # Count before task_done() so drain() callers see final totals
            with self._lock:
                if ok:
                    self.succeeded += 1
                else:
                    self.failures += 1
            self._queue.task_done()

    def _process_job(self, job: SyncJob) -> bool:
        if job.action == SyncAction.PUSH and job.document is not None:
            return self._index.push(job.index, job.document)
        if job.action == SyncAction.REMOVE and job.doc_id is not None:
            return self._index.remove(job.index, job.doc_id)
        logger.warning("Malformed sync job: %s", job.action)
        return False
