import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Sequence

import structlog

from content_pipeline.application.ports.embedding_model_port import EmbeddingModelPort
from content_pipeline.application.ports.index_ports import FulltextIndexPort, VectorIndexPort
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import ContractViolationError, TerminalError
from content_pipeline.core.metrics import CHUNKS_INDEXED_TOTAL
from content_pipeline.domain.models import Chunk, IndexStage

log = structlog.get_logger(__name__)


def batched(items: Sequence[Chunk], size: int) -> Iterator[Sequence[Chunk]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class IndexDispatcher(ABC):
    """
    Writes a document's chunks to one search backend with delete-then-insert semantics.

    Prior entries of the document are removed first so a shorter re-extraction
    leaves nothing stale behind. Chunks are sent in bounded batches; if any
    batch fails the dispatcher removes what it wrote and re-raises, so the
    call either fully succeeds or leaves no entries for the document.
    """

    stage: IndexStage

    def __init__(self, batch_size: Optional[int] = None):
        self.batch_size = batch_size or settings.INDEX_BATCH_SIZE
        if self.batch_size <= 0:
            raise ValueError(f"Batch size must be positive. Received: {self.batch_size}")
        self.log = log.bind(component=type(self).__name__, stage=self.stage.value)

    def index(self, document_id: uuid.UUID, chunks: List[Chunk]) -> int:
        index_log = self.log.bind(document_id=str(document_id), num_chunks=len(chunks))
        index_log.info("Starting index dispatch")
        self._delete_document(document_id)
        written = 0
        try:
            for batch in batched(chunks, self.batch_size):
                self._write_batch(document_id, batch)
                written += len(batch)
        except Exception:
            index_log.error("Index batch failed, removing partial entries", written=written)
            self._rollback(document_id)
            raise
        CHUNKS_INDEXED_TOTAL.labels(stage=self.stage.value).inc(written)
        index_log.info("Index dispatch finished", written=written)
        return written

    def remove_document(self, document_id: uuid.UUID) -> None:
        self._delete_document(document_id)

    def _rollback(self, document_id: uuid.UUID) -> None:
        try:
            self._delete_document(document_id)
        except Exception as e:
            # The original error is re-raised; the next attempt deletes again first
            self.log.warning("Rollback delete failed", document_id=str(document_id), error=str(e))

    @abstractmethod
    def _delete_document(self, document_id: uuid.UUID) -> None:
        pass

    @abstractmethod
    def _write_batch(self, document_id: uuid.UUID, batch: Sequence[Chunk]) -> None:
        pass


class FulltextIndexDispatcher(IndexDispatcher):
    stage = IndexStage.FULLTEXT

    def __init__(self, backend: FulltextIndexPort, batch_size: Optional[int] = None):
        super().__init__(batch_size)
        self.backend = backend

    def _delete_document(self, document_id: uuid.UUID) -> None:
        self.backend.delete_by_document(document_id)

    def _write_batch(self, document_id: uuid.UUID, batch: Sequence[Chunk]) -> None:
        docs: List[Dict[str, Any]] = [
            {
                "id": chunk.entry_id,
                "document_id": str(document_id),
                "sequence_index": chunk.sequence_index,
                "text": chunk.text,
                "source_locator": chunk.source_locator,
                "section_title": chunk.section_title,
            }
            for chunk in batch
        ]
        self.backend.upsert_documents(docs)


class EmbeddingIndexDispatcher(IndexDispatcher):
    stage = IndexStage.EMBEDDING

    def __init__(self, embedding_model: Optional[EmbeddingModelPort], backend: VectorIndexPort,
                 batch_size: Optional[int] = None):
        super().__init__(batch_size)
        # None is allowed for dispatchers that only remove entries
        self.embedding_model = embedding_model
        self.backend = backend

    def _delete_document(self, document_id: uuid.UUID) -> None:
        self.backend.delete_by_document(document_id)

    def _write_batch(self, document_id: uuid.UUID, batch: Sequence[Chunk]) -> None:
        if self.embedding_model is None:
            raise ContractViolationError("Embedding dispatcher has no embedding model", reason="embedding_model_missing")
        vectors = self.embedding_model.embed_texts([chunk.text for chunk in batch])
        if len(vectors) != len(batch):
            raise TerminalError(
                f"Embedding model returned {len(vectors)} vectors for {len(batch)} chunks",
                reason="embedding_count_mismatch",
            )
        expected_dim = self.embedding_model.dimension
        points = []
        for chunk, vector in zip(batch, vectors):
            if len(vector) != expected_dim:
                raise TerminalError(
                    f"Embedding dimension {len(vector)} differs from configured {expected_dim}",
                    reason="embedding_dimension_mismatch",
                )
            points.append({
                "pk": chunk.entry_id,
                "document_id": str(document_id),
                "sequence_index": chunk.sequence_index,
                "text": chunk.text,
                "section_title": chunk.section_title,
                "vector": [float(x) for x in vector],
            })
        self.backend.upsert_points(points)
