import uuid
from typing import List, Optional

import structlog

from content_pipeline.application.ports.blob_store_port import BlobStorePort
from content_pipeline.application.ports.document_store_port import DocumentStorePort
from content_pipeline.application.use_cases.index_document_use_case import IndexDispatcher

log = structlog.get_logger(__name__)


class CleanupDocumentUseCase:
    """
    Best-effort removal of a deleted document from every backend.

    Runs after the deletion marker is set and is safe to repeat: each step is
    idempotent and the metadata row goes last, so an interrupted cleanup is
    finished by the next delivery of the same job.
    """

    def __init__(
        self,
        document_store: DocumentStorePort,
        dispatchers: List[IndexDispatcher],
        blob_store: Optional[BlobStorePort] = None,
    ):
        self.store = document_store
        self.dispatchers = dispatchers
        self.blob_store = blob_store
        self.log = log.bind(component="CleanupDocumentUseCase")

    def execute(self, document_id: uuid.UUID, storage_key: Optional[str] = None) -> bool:
        cleanup_log = self.log.bind(document_id=str(document_id))
        document = self.store.get(document_id)
        if document is not None and not document.is_marked_for_deletion:
            cleanup_log.warning("Cleanup requested for a document not marked for deletion, skipping.")
            return False
        storage_key = storage_key or (document.storage_key if document else None)

        for dispatcher in self.dispatchers:
            dispatcher.remove_document(document_id)
            cleanup_log.debug("Index entries removed", stage=dispatcher.stage.value)
        if self.blob_store is not None and storage_key:
            self.blob_store.delete(storage_key)
        if document is not None:
            self.store.delete(document_id)
        cleanup_log.info("Document cleanup finished", storage_key=storage_key)
        return True
