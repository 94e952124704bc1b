import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List


class FulltextIndexPort(ABC):
    """Inverted-index search backend. Writes are eventually consistent."""

    @abstractmethod
    def ensure_index(self) -> None:
        pass

    @abstractmethod
    def upsert_documents(self, docs: List[Dict[str, Any]]) -> None:
        """Adds or replaces search documents keyed by their ``id`` field."""
        pass

    @abstractmethod
    def delete_documents(self, ids: List[str]) -> None:
        pass

    @abstractmethod
    def delete_by_document(self, document_id: uuid.UUID) -> None:
        """Removes every entry that belongs to ``document_id``."""
        pass


class VectorIndexPort(ABC):
    """Nearest-neighbour search backend."""

    @abstractmethod
    def ensure_collection(self) -> None:
        pass

    @abstractmethod
    def upsert_points(self, points: List[Dict[str, Any]]) -> None:
        """Writes points shaped as ``{pk, document_id, sequence_index, text, vector}``."""
        pass

    @abstractmethod
    def delete_points(self, ids: List[str]) -> None:
        pass

    @abstractmethod
    def delete_by_document(self, document_id: uuid.UUID) -> int:
        """Removes every point that belongs to ``document_id`` and returns how many were deleted."""
        pass
