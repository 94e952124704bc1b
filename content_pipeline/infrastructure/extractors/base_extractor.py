import re
import unicodedata
from typing import List

import structlog

from content_pipeline.application.ports.extraction_port import ExtractionPort
from content_pipeline.core.exceptions import ExtractMalformedError

log = structlog.get_logger(__name__)

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


def normalize_whitespace(text: str) -> str:
    """NFC-normalizes ``text`` and collapses every whitespace run to one space."""
    return " ".join(unicodedata.normalize("NFC", text).split())


def split_paragraphs(text: str) -> List[str]:
    """Splits plain text on blank lines into normalized, non-empty paragraphs."""
    paragraphs = []
    for block in _PARAGRAPH_BREAK.split(text.replace("\r\n", "\n").replace("\r", "\n")):
        normalized = normalize_whitespace(block)
        if normalized:
            paragraphs.append(normalized)
    return paragraphs


class BaseExtractorAdapter(ExtractionPort):
    """
    Base class for extraction adapters with common error logging.
    """
    def _handle_extraction_error(self, e: Exception, filename: str, adapter_name: str) -> ExtractMalformedError:
        log.error(f"{adapter_name} extraction failed", filename=filename, error=str(e), exc_info=True)
        return ExtractMalformedError(f"Error extracting with {adapter_name} for {filename}: {e}")
