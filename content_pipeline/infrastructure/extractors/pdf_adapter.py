import fitz  # PyMuPDF
import structlog
from typing import List

from content_pipeline.domain.models import ExtractedSection
from content_pipeline.infrastructure.extractors.base_extractor import BaseExtractorAdapter, normalize_whitespace

log = structlog.get_logger(__name__)

_TEXT_BLOCK = 0


class PdfAdapter(BaseExtractorAdapter):
    """Adapter to extract text from PDF files using PyMuPDF, one section per page."""

    def extract_sections(self, file_bytes: bytes, filename: str) -> List[ExtractedSection]:
        log.debug("PdfAdapter: Extracting text blocks from PDF bytes", filename=filename)
        sections: List[ExtractedSection] = []
        try:
            with fitz.open(stream=file_bytes, filetype="pdf") as doc:
                log.info("PdfAdapter: Processing PDF document", filename=filename, num_pages_in_doc=len(doc))
                for page_num_zero_based, page in enumerate(doc):
                    page_num_one_based = page_num_zero_based + 1
                    paragraphs = []
                    for block in page.get_text("blocks", sort=True):
                        if block[6] != _TEXT_BLOCK:
                            continue
                        text = normalize_whitespace(block[4])
                        if text:
                            paragraphs.append(text)
                    sections.append(ExtractedSection(locator=f"page:{page_num_one_based}", paragraphs=paragraphs))
        except Exception as e:
            raise self._handle_extraction_error(e, filename, "PdfAdapter") from e

        log.info("PdfAdapter: PDF extraction successful", filename=filename,
                 pages_with_text=sum(1 for s in sections if s.paragraphs))
        return sections
