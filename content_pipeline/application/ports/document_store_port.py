import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from content_pipeline.domain.models import Chunk, Document, DocumentState, IndexStage


class DocumentStorePort(ABC):
    """
    Interface (Port) for the system of record of documents and their chunks.

    Every state change is a compare-and-set: it applies only when the persisted
    state matches the expected one and the document is not marked for deletion.
    A rejected compare-and-set returns False and is never an error.
    Infrastructure failures raise DocumentStoreUnavailableError.
    """

    @abstractmethod
    def create_schema(self) -> None:
        pass

    @abstractmethod
    def create(self, document: Document) -> Document:
        """Inserts a new document. Raises DuplicateStorageKeyError if the storage key is taken."""
        pass

    @abstractmethod
    def get(self, document_id: uuid.UUID) -> Optional[Document]:
        pass

    @abstractmethod
    def delete(self, document_id: uuid.UUID) -> bool:
        """Deletes the document and its chunks. Returns False when nothing was deleted."""
        pass

    @abstractmethod
    def compare_and_set(
        self,
        document_id: uuid.UUID,
        expected_state: Union[DocumentState, Sequence[DocumentState]],
        new_state: DocumentState,
        extra_fields: Optional[Dict[str, Any]] = None,
        updated_before: Optional[datetime] = None,
    ) -> bool:
        """``updated_before``, when given, also requires the row to be older than that instant."""
        pass

    @abstractmethod
    def save_extraction(self, document_id: uuid.UUID, chunks: List[Chunk], extracted_at: datetime) -> bool:
        """
        Replaces the chunk set and moves ExtractionInProgress -> Extracted in one transaction.
        Returns False, writing nothing, when the transition is rejected.
        """
        pass

    @abstractmethod
    def load_chunks(self, document_id: uuid.UUID) -> List[Chunk]:
        pass

    @abstractmethod
    def mark_stage_indexed(self, document_id: uuid.UUID, stage: IndexStage, indexed_at: datetime) -> bool:
        """Records a stage completion once. Returns False if already recorded or not allowed."""
        pass

    @abstractmethod
    def promote_if_fully_indexed(self, document_id: uuid.UUID) -> bool:
        """IndexingInProgress -> Indexed, only when both stage completions are recorded."""
        pass

    @abstractmethod
    def mark_for_deletion(self, document_id: uuid.UUID, requested_at: datetime) -> bool:
        pass

    @abstractmethod
    def find_stale(self, states: Iterable[DocumentState], updated_before: datetime) -> List[Document]:
        pass
