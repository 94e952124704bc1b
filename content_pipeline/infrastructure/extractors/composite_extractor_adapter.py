from typing import Dict, List
import structlog

from content_pipeline.application.ports.extraction_port import ExtractionPort
from content_pipeline.core.exceptions import ExtractError, UnsupportedFormatError
from content_pipeline.domain.models import DocumentFormat, ExtractedSection
from .base_extractor import BaseExtractorAdapter

log = structlog.get_logger(__name__)


class CompositeExtractorAdapter(BaseExtractorAdapter):
    """
    Delegates extraction to the adapter registered for a document format.
    Adding a format means registering another adapter here.
    """
    def __init__(self, extractors: Dict[DocumentFormat, ExtractionPort]):
        self.extractors = extractors
        self.log = log.bind(component="CompositeExtractorAdapter")
        self.log.info("Initialized with supported formats", formats=[f.value for f in extractors])

    def supports(self, document_format: DocumentFormat) -> bool:
        return document_format in self.extractors

    def extract_sections_for(self, file_bytes: bytes, filename: str, document_format: DocumentFormat) -> List[ExtractedSection]:
        extractor = self.extractors.get(document_format)
        if not extractor:
            self.log.warning("Unsupported document format", format=str(document_format))
            raise UnsupportedFormatError(f"No extractor registered for format: {document_format}")

        self.log.debug("Delegating extraction", filename=filename, format=document_format.value)
        try:
            return extractor.extract_sections(file_bytes, filename)
        except ExtractError:
            raise
        except Exception as e:
            raise self._handle_extraction_error(e, filename, f"CompositeAdapter -> {type(extractor).__name__}") from e

    def extract_sections(self, file_bytes: bytes, filename: str) -> List[ExtractedSection]:
        return self.extract_sections_for(file_bytes, filename, DocumentFormat.from_filename(filename))
