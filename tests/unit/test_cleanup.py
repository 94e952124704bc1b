"""Unit tests for CleanupDocumentUseCase and the stale sweeper."""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock

from content_pipeline.application.use_cases.cleanup_document_use_case import CleanupDocumentUseCase
from content_pipeline.application.use_cases.index_document_use_case import (
    EmbeddingIndexDispatcher,
    FulltextIndexDispatcher,
)
from content_pipeline.core.exceptions import DocumentStoreUnavailableError
from content_pipeline.domain.models import Chunk
from content_pipeline.workers.sweeper import StaleDocumentSweeper
from doubles import FakeEmbeddingModel, FakeFulltextBackend, FakeVectorBackend


class TestCleanupDocument:
    def _setup(self, store, blob_store):
        fulltext, vectors = FakeFulltextBackend(), FakeVectorBackend()
        dispatchers = [FulltextIndexDispatcher(fulltext), EmbeddingIndexDispatcher(FakeEmbeddingModel(), vectors)]
        use_case = CleanupDocumentUseCase(store, dispatchers, blob_store)
        return use_case, dispatchers, fulltext, vectors

    def test_removes_entries_blob_and_row(self, orchestrator, store, blob_store, make_document) -> None:
        use_case, dispatchers, fulltext, vectors = self._setup(store, blob_store)
        document = make_document()
        blob_store.put(document.storage_key, b"raw", "text/plain")
        chunks = [Chunk(document_id=document.id, sequence_index=0, text="hello", source_locator="text#0")]
        for dispatcher in dispatchers:
            dispatcher.index(document.id, chunks)
        orchestrator.request_deletion(document.id)

        assert use_case.execute(document.id, document.storage_key)

        assert fulltext.entries_for(document.id) == []
        assert vectors.entries_for(document.id) == []
        assert document.storage_key not in blob_store.blobs
        assert store.get(document.id) is None

    def test_repeat_after_completion_is_harmless(self, orchestrator, store, blob_store, make_document) -> None:
        use_case, *_ = self._setup(store, blob_store)
        document = make_document()
        orchestrator.request_deletion(document.id)

        assert use_case.execute(document.id, document.storage_key)
        assert use_case.execute(document.id, document.storage_key)

    def test_unmarked_document_is_kept(self, store, blob_store, make_document) -> None:
        use_case, *_ = self._setup(store, blob_store)
        document = make_document()
        blob_store.put(document.storage_key, b"raw", "text/plain")

        assert not use_case.execute(document.id)

        assert store.get(document.id) is not None
        assert document.storage_key in blob_store.blobs


class TestStaleDocumentSweeper:
    def test_run_once_counts_swept_documents(self) -> None:
        orchestrator = MagicMock()
        orchestrator.sweep_stale_documents.return_value = [uuid.uuid4(), uuid.uuid4()]

        assert StaleDocumentSweeper(orchestrator, interval_seconds=60).run_once() == 2

    def test_transient_failure_waits_for_next_interval(self) -> None:
        orchestrator = MagicMock()
        orchestrator.sweep_stale_documents.side_effect = DocumentStoreUnavailableError("db down")

        assert StaleDocumentSweeper(orchestrator, interval_seconds=60).run_once() == 0

    def test_start_and_stop(self) -> None:
        orchestrator = MagicMock()
        orchestrator.sweep_stale_documents.return_value = []
        sweeper = StaleDocumentSweeper(orchestrator, interval_seconds=0.01)

        thread = sweeper.start()
        sweeper.stop()

        assert not thread.is_alive()
