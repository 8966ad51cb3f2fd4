"""Tests for the background index sync worker."""
from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from fieldvault.services.search_index import MeilisearchIndex
from fieldvault.worker import IndexSyncWorker, SyncAction, SyncJob


def _make_index(push_result: bool = True) -> MagicMock:
    index = MagicMock(spec=MeilisearchIndex)
    index.push.return_value = push_result
    index.remove.return_value = True
    return index


class TestIndexSyncWorker:
    def test_pushes_are_processed(self) -> None:
        index = _make_index()
        with IndexSyncWorker(index, workers=2) as worker:
            for i in range(10):
                worker.push("encrypted_contacts", {"id": str(i)})
        assert index.push.call_count == 10
        assert worker.succeeded == 10
        assert worker.failures == 0

    def test_remove(self) -> None:
        index = _make_index()
        with IndexSyncWorker(index, workers=1) as worker:
            worker.remove("encrypted_contacts", "7")
        index.remove.assert_called_once_with("encrypted_contacts", "7")

    def test_failures_counted_not_raised(self) -> None:
        index = _make_index(push_result=False)
        with IndexSyncWorker(index, workers=1) as worker:
            worker.push("encrypted_contacts", {"id": "1"})
        assert worker.failures == 1

    def test_unexpected_exception_does_not_kill_thread(self) -> None:
        index = _make_index()
        index.push.side_effect = [RuntimeError("boom"), True]
        with IndexSyncWorker(index, workers=1) as worker:
            worker.push("encrypted_contacts", {"id": "1"})
            worker.push("encrypted_contacts", {"id": "2"})
        assert worker.failures == 1
        assert worker.succeeded == 1

    def test_malformed_job_counted_as_failure(self) -> None:
        with IndexSyncWorker(_make_index(), workers=1) as worker:
            worker.submit(SyncJob(action=SyncAction.PUSH, index="encrypted_contacts"))
        assert worker.failures == 1

    def test_submit_does_not_wait_for_slow_index(self) -> None:
        """A slow search service never blocks the submitting thread."""
        release = threading.Event()
        index = _make_index()
        index.push.side_effect = lambda *args: release.wait(5) or True

        worker = IndexSyncWorker(index, workers=1)
        worker.start()
        started = time.monotonic()
        for i in range(5):
            worker.push("encrypted_contacts", {"id": str(i)})
        assert time.monotonic() - started < 1.0
        assert worker.pending == 5

        release.set()
        assert worker.drain(timeout=5) is True
        worker.stop()

    def test_drain_timeout(self) -> None:
        release = threading.Event()
        index = _make_index()
        index.push.side_effect = lambda *args: release.wait(5) or True

        worker = IndexSyncWorker(index, workers=1)
        worker.start()
        worker.push("encrypted_contacts", {"id": "1"})
        assert worker.drain(timeout=0.05) is False
        release.set()
        worker.drain(timeout=5)
        worker.stop()

    def test_drain_without_threads_processes_inline(self) -> None:
        index = _make_index()
        worker = IndexSyncWorker(index, workers=1)
        worker.push("encrypted_contacts", {"id": "1"})
        assert worker.drain() is True
        assert worker.succeeded == 1

    def test_needs_a_thread(self) -> None:
        with pytest.raises(ValueError):
            IndexSyncWorker(_make_index(), workers=0)
