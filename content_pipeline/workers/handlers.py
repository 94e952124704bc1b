import uuid
from typing import Optional

import structlog

from content_pipeline.application.ports.blob_store_port import BlobStorePort
from content_pipeline.application.ports.message_transport_port import MessageTransportPort
from content_pipeline.application.use_cases.cleanup_document_use_case import CleanupDocumentUseCase
from content_pipeline.application.use_cases.extract_content_use_case import ExtractContentUseCase
from content_pipeline.application.use_cases.index_document_use_case import IndexDispatcher
from content_pipeline.application.use_cases.pipeline_orchestrator import PipelineOrchestrator
from content_pipeline.core.exceptions import ContractViolationError
from content_pipeline.domain.messages import (
    INDEX_REQUEST_KINDS, IndexCompletedPayload, IndexFailedPayload, JobKind, JobMessage,
    RpcErrorCode, RpcRequest, RpcResponse,
)
from content_pipeline.workers.runtime import StageHandler

log = structlog.get_logger(__name__)


class ExtractContentHandler(StageHandler):
    stage_name = "extract"
    accepted_kinds = frozenset({JobKind.EXTRACT_REQUESTED})

    def __init__(self, orchestrator: PipelineOrchestrator, blob_store: BlobStorePort,
                 extract_use_case: ExtractContentUseCase):
        self.orchestrator = orchestrator
        self.blob_store = blob_store
        self.extract_use_case = extract_use_case

    def handle(self, message: JobMessage) -> None:
        payload = message.parsed_payload()
        if not self.orchestrator.begin_extraction(message.document_id):
            self.orchestrator.resume_index_requests(message.document_id)
            return
        file_bytes = self.blob_store.get(payload.storage_key)
        chunks = self.extract_use_case.execute(
            document_id=message.document_id,
            file_bytes=file_bytes,
            document_format=payload.format,
            original_filename=payload.original_name,
        )
        self.orchestrator.complete_extraction(message.document_id, chunks)

    def give_up(self, document_id: uuid.UUID, message: Optional[JobMessage], reason: str) -> None:
        self.orchestrator.fail_extraction(document_id, reason)


class IndexStageHandler(StageHandler):
    """
    Runs one index stage and reports the result on the completion topic.

    Success is reported as ``IndexCompleted``; giving up is reported as
    ``IndexFailed``. Both carry the correlation id of the request.
    """

    def __init__(
        self,
        dispatcher: IndexDispatcher,
        orchestrator: PipelineOrchestrator,
        transport: MessageTransportPort,
        completion_topic: Optional[str] = None,
    ):
        self.dispatcher = dispatcher
        self.stage = dispatcher.stage
        self.stage_name = f"index_{self.stage.value}"
        self.accepted_kinds = frozenset({INDEX_REQUEST_KINDS[self.stage]})
        self.orchestrator = orchestrator
        self.transport = transport
        self.completion_topic = completion_topic or orchestrator.topics.completion

    def handle(self, message: JobMessage) -> None:
        payload = message.parsed_payload()
        if payload.stage != self.stage:
            raise ContractViolationError(f"{message.kind.value} carries stage '{payload.stage.value}'")
        if not self.orchestrator.begin_indexing(message.document_id, self.stage):
            return
        chunks = self.orchestrator.load_chunks(message.document_id)
        if not chunks:
            raise ContractViolationError("Extracted document has no stored chunks", reason="missing_chunks")

        indexed = self.dispatcher.index(message.document_id, chunks)
        self.transport.publish(self.completion_topic, JobMessage.build(
            JobKind.INDEX_COMPLETED,
            message.document_id,
            IndexCompletedPayload(stage=self.stage, indexed_chunks=indexed),
            correlation_id=message.correlation_id,
        ))

    def give_up(self, document_id: uuid.UUID, message: Optional[JobMessage], reason: str) -> None:
        self.transport.publish(self.completion_topic, JobMessage.build(
            JobKind.INDEX_FAILED,
            document_id,
            IndexFailedPayload(stage=self.stage, reason=reason),
            correlation_id=message.correlation_id if message else None,
        ))


class CompletionHandler(StageHandler):
    """Folds stage results into the document state."""

    stage_name = "completion"
    accepted_kinds = frozenset({JobKind.INDEX_COMPLETED, JobKind.INDEX_FAILED})

    def __init__(self, orchestrator: PipelineOrchestrator):
        self.orchestrator = orchestrator

    def handle(self, message: JobMessage) -> None:
        payload = message.parsed_payload()
        if message.kind == JobKind.INDEX_COMPLETED:
            self.orchestrator.record_index_completed(message.document_id, payload.stage)
        else:
            self.orchestrator.record_index_failed(message.document_id, payload.stage, payload.reason)

    def give_up(self, document_id: uuid.UUID, message: Optional[JobMessage], reason: str) -> None:
        self.orchestrator.fail_document(document_id, reason)


class CleanupHandler(StageHandler):
    stage_name = "cleanup"
    accepted_kinds = frozenset({JobKind.CLEANUP_REQUESTED})

    def __init__(self, cleanup_use_case: CleanupDocumentUseCase):
        self.cleanup_use_case = cleanup_use_case

    def handle(self, message: JobMessage) -> None:
        payload = message.parsed_payload()
        self.cleanup_use_case.execute(message.document_id, payload.storage_key)

    def give_up(self, document_id: uuid.UUID, message: Optional[JobMessage], reason: str) -> None:
        # The document is already hidden by its deletion marker
        log.error("Cleanup abandoned, backends may hold orphaned entries",
                  document_id=str(document_id), reason=reason)


class DocumentStatusResponder:
    """Answers status queries arriving over broker RPC."""

    def __init__(self, orchestrator: PipelineOrchestrator):
        self.orchestrator = orchestrator

    def __call__(self, request: RpcRequest) -> RpcResponse:
        if request.method == "health":
            return RpcResponse.ok({"status": "ok"})
        if request.method != "document_status":
            return RpcResponse.fail(RpcErrorCode.BAD_REQUEST, f"Unknown method '{request.method}'")

        try:
            document_id = uuid.UUID(str(request.params["document_id"]))
        except (KeyError, ValueError):
            return RpcResponse.fail(RpcErrorCode.BAD_REQUEST, "params.document_id must be a UUID")

        status = self.orchestrator.document_status(document_id)
        if status is None:
            return RpcResponse.fail(RpcErrorCode.NOT_FOUND, f"Document {document_id} not found")
        return RpcResponse.ok(status)
