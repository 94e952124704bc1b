import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog

from content_pipeline.application.ports.blob_store_port import BlobStorePort
from content_pipeline.application.ports.document_store_port import DocumentStorePort
from content_pipeline.application.ports.message_transport_port import MessageTransportPort
from content_pipeline.core.config import settings
from content_pipeline.core.metrics import STALE_DOCUMENTS_SWEPT_TOTAL
from content_pipeline.domain.messages import (
    INDEX_REQUEST_KINDS, CleanupRequestedPayload, ExtractRequestedPayload, IndexRequestedPayload,
    JobKind, JobMessage,
)
from content_pipeline.domain.models import (
    IN_PROGRESS_STATES, NON_TERMINAL_STATES, Chunk, Document, DocumentFormat, DocumentState, IndexStage,
)

log = structlog.get_logger(__name__)


@dataclass
class PipelineTopics:
    extract: str
    fulltext: str
    embedding: str
    completion: str
    cleanup: str

    @classmethod
    def from_settings(cls) -> "PipelineTopics":
        return cls(
            extract=settings.KAFKA_EXTRACT_TOPIC,
            fulltext=settings.KAFKA_FULLTEXT_TOPIC,
            embedding=settings.KAFKA_EMBEDDING_TOPIC,
            completion=settings.KAFKA_COMPLETION_TOPIC,
            cleanup=settings.KAFKA_CLEANUP_TOPIC,
        )

    def index_topic(self, stage: IndexStage) -> str:
        return self.fulltext if stage == IndexStage.FULLTEXT else self.embedding


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineOrchestrator:
    """
    Drives documents through their lifecycle.

    This is the only component that changes ``Document.state``. Each transition
    is a compare-and-set in the document store; a rejected one means another
    delivery got there first and is treated as a no-op. Jobs for the next stage
    are published only after the state that justifies them is persisted.
    """

    def __init__(
        self,
        document_store: DocumentStorePort,
        transport: MessageTransportPort,
        topics: Optional[PipelineTopics] = None,
        blob_store: Optional[BlobStorePort] = None,
        stale_timeout_seconds: Optional[int] = None,
    ):
        self.store = document_store
        self.transport = transport
        self.topics = topics or PipelineTopics.from_settings()
        self.blob_store = blob_store
        self.stale_timeout = timedelta(seconds=stale_timeout_seconds or settings.STALE_STAGE_TIMEOUT_SECONDS)
        self.log = log.bind(component="PipelineOrchestrator")

    # --- Upload ---

    def submit_document(
        self,
        owner_id: uuid.UUID,
        original_name: str,
        document_format: DocumentFormat,
        blob: bytes,
    ) -> Document:
        """Stores the blob, registers the document as Uploaded and requests its extraction."""
        if self.blob_store is None:
            raise RuntimeError("submit_document requires a blob store")
        document_id = uuid.uuid4()
        storage_key = f"{owner_id}/{document_id}.{document_format.value}"
        self.blob_store.put(storage_key, blob, document_format.content_type)

        document = self.store.create(Document(
            id=document_id,
            owner_id=owner_id,
            storage_key=storage_key,
            format=document_format,
            original_name=original_name,
            added_at=_utcnow(),
        ))
        self.transport.publish(self.topics.extract, JobMessage.build(
            JobKind.EXTRACT_REQUESTED,
            document_id,
            ExtractRequestedPayload(storage_key=storage_key, format=document_format, original_name=original_name),
        ))
        self.log.info("Document submitted for extraction", document_id=str(document_id), storage_key=storage_key)
        return document

    # --- Extraction ---

    def begin_extraction(self, document_id: uuid.UUID) -> bool:
        """
        Claims a document for extraction.

        Returns True when extraction should run: the document just moved
        Uploaded -> ExtractionInProgress, or it was already in progress (a retry
        or a redelivery after a crash). Returns False for every other state.
        """
        if self.store.compare_and_set(document_id, DocumentState.UPLOADED, DocumentState.EXTRACTION_IN_PROGRESS):
            return True
        document = self.store.get(document_id)
        if document is None or document.is_marked_for_deletion:
            self.log.info("Extraction skipped, document missing or being deleted", document_id=str(document_id))
            return False
        if document.state == DocumentState.EXTRACTION_IN_PROGRESS:
            return True
        self.log.info("Extraction skipped, document already past extraction",
                      document_id=str(document_id), state=document.state.value)
        return False

    def complete_extraction(self, document_id: uuid.UUID, chunks: List[Chunk]) -> bool:
        """Persists the chunk set with the Extracted transition, then requests both index stages."""
        if not self.store.save_extraction(document_id, chunks, _utcnow()):
            self.log.info("Extraction result discarded by compare-and-set", document_id=str(document_id))
            return False
        self._request_index_stages(document_id, list(IndexStage), len(chunks))
        return True

    def resume_index_requests(self, document_id: uuid.UUID) -> List[IndexStage]:
        """
        Re-requests the index stages that have not completed for an extracted document.

        A redelivered extraction job lands here when the extraction result was
        persisted but publishing an index request failed. Extraction does not
        run again; ``begin_indexing`` absorbs any duplicate request.
        """
        document = self.store.get(document_id)
        if document is None or document.is_marked_for_deletion:
            return []
        if document.state not in (DocumentState.EXTRACTED, DocumentState.INDEXING_IN_PROGRESS):
            return []
        pending = [stage for stage in IndexStage if not document.stage_completed(stage)]
        if pending:
            chunk_count = len(self.store.load_chunks(document_id))
            self._request_index_stages(document_id, pending, chunk_count)
        return pending

    def _request_index_stages(self, document_id: uuid.UUID, stages: List[IndexStage], chunk_count: int) -> None:
        for stage in stages:
            self.transport.publish(self.topics.index_topic(stage), JobMessage.build(
                INDEX_REQUEST_KINDS[stage],
                document_id,
                IndexRequestedPayload(stage=stage, chunk_count=chunk_count),
                correlation_id=uuid.uuid4(),
            ))
        self.log.info("Index stages requested", document_id=str(document_id),
                      stages=[s.value for s in stages], num_chunks=chunk_count)

    def fail_extraction(self, document_id: uuid.UUID, reason: str) -> bool:
        """
        Fails a document whose extraction job was abandoned.

        Extracted is included: the job can only be abandoned there when the
        index requests could not be published.
        """
        return self._fail(
            document_id,
            (DocumentState.UPLOADED, DocumentState.EXTRACTION_IN_PROGRESS, DocumentState.EXTRACTED),
            reason,
        )

    # --- Indexing ---

    def begin_indexing(self, document_id: uuid.UUID, stage: IndexStage) -> bool:
        """
        Returns True when ``stage`` should index the document now.

        Duplicate requests for a stage that already reported success, and
        requests for terminal or deleted documents, return False without
        touching any backend.
        """
        document = self.store.get(document_id)
        stage_log = self.log.bind(document_id=str(document_id), stage=stage.value)
        if document is None or document.is_marked_for_deletion:
            stage_log.info("Indexing skipped, document missing or being deleted")
            return False
        if document.state not in (DocumentState.EXTRACTED, DocumentState.INDEXING_IN_PROGRESS):
            stage_log.info("Indexing skipped for document state", state=document.state.value)
            return False
        if document.stage_completed(stage):
            stage_log.info("Indexing skipped, stage already completed")
            return False
        if document.state == DocumentState.EXTRACTED:
            self.store.compare_and_set(document_id, DocumentState.EXTRACTED, DocumentState.INDEXING_IN_PROGRESS)
        return True

    def load_chunks(self, document_id: uuid.UUID) -> List[Chunk]:
        return self.store.load_chunks(document_id)

    def record_index_completed(self, document_id: uuid.UUID, stage: IndexStage) -> bool:
        """Records one stage's success; promotes to Indexed once both stages have reported."""
        self.store.compare_and_set(document_id, DocumentState.EXTRACTED, DocumentState.INDEXING_IN_PROGRESS)
        recorded = self.store.mark_stage_indexed(document_id, stage, _utcnow())
        if not recorded:
            self.log.info("Duplicate or late stage completion ignored", document_id=str(document_id), stage=stage.value)
        promoted = self.store.promote_if_fully_indexed(document_id)
        if promoted:
            self.log.info("Document fully indexed", document_id=str(document_id))
        return promoted

    def record_index_failed(self, document_id: uuid.UUID, stage: IndexStage, reason: str) -> bool:
        return self._fail(
            document_id,
            (DocumentState.EXTRACTED, DocumentState.INDEXING_IN_PROGRESS),
            f"{stage.value}:{reason}",
        )

    def fail_document(self, document_id: uuid.UUID, reason: str) -> bool:
        return self._fail(document_id, NON_TERMINAL_STATES, reason)

    def _fail(self, document_id: uuid.UUID, expected_states, reason: str) -> bool:
        failed = self.store.compare_and_set(
            document_id, expected_states, DocumentState.FAILED, {"failure_reason": reason}
        )
        if failed:
            self.log.warning("Document moved to Failed", document_id=str(document_id), reason=reason)
        else:
            self.log.info("Failure not recorded, document not in an expected state",
                          document_id=str(document_id), reason=reason)
        return failed

    # --- Deletion ---

    def request_deletion(self, document_id: uuid.UUID) -> bool:
        """Marks the document for deletion and schedules cleanup. Later stage results become no-ops."""
        document = self.store.get(document_id)
        if document is None:
            return False
        if self.store.mark_for_deletion(document_id, _utcnow()):
            self.log.info("Document marked for deletion", document_id=str(document_id))
        self.transport.publish(self.topics.cleanup, JobMessage.build(
            JobKind.CLEANUP_REQUESTED,
            document_id,
            CleanupRequestedPayload(storage_key=document.storage_key),
        ))
        return True

    # --- Reconciliation ---

    def sweep_stale_documents(self, now: Optional[datetime] = None) -> List[uuid.UUID]:
        """
        Fails documents whose in-progress state has not changed within the stale timeout.

        Covers workers that crashed without settling their message. Queued
        documents (Uploaded, Extracted) are left alone however long the
        backlog is. The compare-and-set repeats the age check, so a document
        that made progress after the query is not failed.
        """
        now = now or _utcnow()
        cutoff = now - self.stale_timeout
        swept: List[uuid.UUID] = []
        for document in self.store.find_stale(IN_PROGRESS_STATES, cutoff):
            reason = f"stage_timeout:{document.state.value}"
            if self.store.compare_and_set(document.id, document.state, DocumentState.FAILED,
                                          {"failure_reason": reason}, updated_before=cutoff):
                STALE_DOCUMENTS_SWEPT_TOTAL.labels(from_state=document.state.value).inc()
                swept.append(document.id)
                self.log.warning("Stale document moved to Failed", document_id=str(document.id),
                                 state=document.state.value, last_update=str(document.updated_at))
        if swept:
            self.log.info("Stale document sweep finished", swept=len(swept))
        return swept

    # --- Queries ---

    def document_status(self, document_id: uuid.UUID) -> Optional[Dict[str, Any]]:
        document = self.store.get(document_id)
        if document is None:
            return None
        return {
            "document_id": str(document.id),
            "state": document.state.value,
            "failure_reason": document.failure_reason,
            "ready": document.index_ready,
            "fulltext_indexed": document.fulltext_indexed_at is not None,
            "embedding_indexed": document.embedding_indexed_at is not None,
            "deletion_requested": document.is_marked_for_deletion,
        }
