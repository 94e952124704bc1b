import time
import uuid
import structlog
from typing import List, Optional

from content_pipeline.application.ports.chunking_port import ChunkingPort
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import ExtractEmptyError
from content_pipeline.core.metrics import CHUNKS_PRODUCED_TOTAL
from content_pipeline.domain.models import Chunk, DocumentFormat
from content_pipeline.infrastructure.extractors.composite_extractor_adapter import CompositeExtractorAdapter

log = structlog.get_logger(__name__)


class ExtractContentUseCase:
    """
    Turns a raw blob into the ordered chunk sequence of a document.

    Pure with respect to the document store: persisting the result is the
    orchestrator's job.
    """

    def __init__(
        self,
        extractor: CompositeExtractorAdapter,
        chunking_port: ChunkingPort,
        max_chunk_chars: Optional[int] = None,
    ):
        self.extractor = extractor
        self.chunking_port = chunking_port
        self.max_chunk_chars = max_chunk_chars or settings.MAX_CHUNK_CHARS
        self.log = log.bind(component="ExtractContentUseCase")

    def execute(
        self,
        document_id: uuid.UUID,
        file_bytes: bytes,
        document_format: DocumentFormat,
        original_filename: str = "",
    ) -> List[Chunk]:
        """
        Raises:
            ExtractMalformedError: The source cannot be parsed.
            ExtractEmptyError: The source parsed but holds no text.
            UnsupportedFormatError: No extractor for ``document_format``.
        """
        start_time = time.perf_counter()
        use_case_log = self.log.bind(document_id=str(document_id), format=document_format.value,
                                     original_filename=original_filename)
        use_case_log.info("Starting content extraction", file_size=len(file_bytes))

        sections = self.extractor.extract_sections_for(file_bytes, original_filename, document_format)

        chunks: List[Chunk] = []
        for section in sections:
            if not section.paragraphs:
                continue
            pieces = self.chunking_port.chunk_paragraphs(section.paragraphs, self.max_chunk_chars)
            for part, text in enumerate(pieces):
                chunks.append(Chunk(
                    document_id=document_id,
                    sequence_index=len(chunks),
                    text=text,
                    source_locator=f"{section.locator}#{part}",
                    section_title=section.title,
                ))

        if not chunks:
            use_case_log.warning("No extractable text found", sections=len(sections))
            raise ExtractEmptyError(f"No extractable text in document {document_id}")

        CHUNKS_PRODUCED_TOTAL.labels(format=document_format.value).inc(len(chunks))
        use_case_log.info("Content extraction finished", sections=len(sections), num_chunks=len(chunks),
                          processing_time_ms=round((time.perf_counter() - start_time) * 1000, 2))
        return chunks
