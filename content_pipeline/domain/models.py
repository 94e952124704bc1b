import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator


class DocumentState(str, Enum):
    """Lifecycle states. ``Indexed`` and ``Failed`` are terminal."""
    UPLOADED = "Uploaded"
    EXTRACTION_IN_PROGRESS = "ExtractionInProgress"
    EXTRACTED = "Extracted"
    INDEXING_IN_PROGRESS = "IndexingInProgress"
    INDEXED = "Indexed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentState.INDEXED, DocumentState.FAILED)


# States in which extracted_at must be set
EXTRACTED_STATES = (
    DocumentState.EXTRACTED,
    DocumentState.INDEXING_IN_PROGRESS,
    DocumentState.INDEXED,
)

NON_TERMINAL_STATES = (
    DocumentState.UPLOADED,
    DocumentState.EXTRACTION_IN_PROGRESS,
    DocumentState.EXTRACTED,
    DocumentState.INDEXING_IN_PROGRESS,
)

# States a worker holds while it runs a stage; only these can go stale
IN_PROGRESS_STATES = (
    DocumentState.EXTRACTION_IN_PROGRESS,
    DocumentState.INDEXING_IN_PROGRESS,
)


class DocumentFormat(str, Enum):
    EPUB = "epub"
    PDF = "pdf"
    TEXT = "text"

    @property
    def content_type(self) -> str:
        return _CONTENT_TYPES[self]

    @classmethod
    def from_filename(cls, filename: str) -> "DocumentFormat":
        suffix = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        try:
            return _SUFFIXES[suffix]
        except KeyError:
            raise ValueError(f"Cannot infer document format from filename '{filename}'") from None


_CONTENT_TYPES = {
    DocumentFormat.EPUB: "application/epub+zip",
    DocumentFormat.PDF: "application/pdf",
    DocumentFormat.TEXT: "text/plain",
}

_SUFFIXES = {
    "epub": DocumentFormat.EPUB,
    "pdf": DocumentFormat.PDF,
    "txt": DocumentFormat.TEXT,
    "text": DocumentFormat.TEXT,
}


class IndexStage(str, Enum):
    FULLTEXT = "fulltext"
    EMBEDDING = "embedding"


class Document(BaseModel):
    """A row of the document store (``source_meta``)."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    owner_id: uuid.UUID
    storage_key: str = Field(..., min_length=1, description="Unique key of the raw blob in the blob store.")
    format: DocumentFormat
    original_name: str
    added_at: datetime
    extracted_at: Optional[datetime] = None
    state: DocumentState = DocumentState.UPLOADED
    failure_reason: Optional[str] = None
    fulltext_indexed_at: Optional[datetime] = None
    embedding_indexed_at: Optional[datetime] = None
    deletion_requested_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_marked_for_deletion(self) -> bool:
        return self.deletion_requested_at is not None

    def stage_completed(self, stage: IndexStage) -> bool:
        if stage == IndexStage.FULLTEXT:
            return self.fulltext_indexed_at is not None
        return self.embedding_indexed_at is not None

    @property
    def index_ready(self) -> bool:
        return self.state == DocumentState.INDEXED


class Chunk(BaseModel):
    """One unit of extracted text, in reading order."""
    document_id: uuid.UUID
    sequence_index: int = Field(..., ge=0)
    text: str
    source_locator: str = Field(..., description="Format-specific position hint, opaque downstream.")
    section_title: Optional[str] = Field(default=None, description="Title of the chapter or section the chunk comes from.")

    @field_validator("text")
    @classmethod
    def text_not_empty(cls, v: str) -> str:
        if not v or v.isspace():
            raise ValueError("Chunk text must be non-empty")
        return v

    @property
    def entry_id(self) -> str:
        """Key of this chunk in the index backends."""
        return f"{self.document_id}_{self.sequence_index}"


class ExtractedSection(BaseModel):
    """A contiguous block of a source document. Chunks never span two sections."""
    locator: str
    title: Optional[str] = None
    paragraphs: List[str] = Field(default_factory=list)
