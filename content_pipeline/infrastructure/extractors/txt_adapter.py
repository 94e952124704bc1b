import structlog
from typing import List

from content_pipeline.core.exceptions import ExtractMalformedError
from content_pipeline.domain.models import ExtractedSection
from content_pipeline.infrastructure.extractors.base_extractor import BaseExtractorAdapter, split_paragraphs

log = structlog.get_logger(__name__)


class TxtAdapter(BaseExtractorAdapter):
    """Adapter to extract text from plain text files."""

    ENCODINGS_TO_TRY = ("utf-8-sig", "cp1252", "latin-1")

    def extract_sections(self, file_bytes: bytes, filename: str) -> List[ExtractedSection]:
        if b"\x00" in file_bytes:
            log.error("TxtAdapter: Binary content in text file", filename=filename)
            raise ExtractMalformedError(f"File {filename} contains binary content")

        text = None
        for enc in self.ENCODINGS_TO_TRY:
            try:
                text = file_bytes.decode(enc)
                log.info(f"TxtAdapter: Successfully decoded with {enc}", filename=filename)
                break
            except UnicodeDecodeError:
                log.debug(f"TxtAdapter: Failed to decode with {enc}, trying next.", filename=filename)

        if text is None:
            raise ExtractMalformedError(f"Could not decode text file {filename} with tried encodings.")

        paragraphs = split_paragraphs(text)
        log.info("TxtAdapter: Text extraction successful", filename=filename, length=len(text), paragraphs=len(paragraphs))
        return [ExtractedSection(locator="text", paragraphs=paragraphs)]
