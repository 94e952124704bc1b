from abc import ABC, abstractmethod
from typing import List

from content_pipeline.domain.models import ExtractedSection


class ExtractionPort(ABC):
    """
    Interface (Port) for turning raw document bytes into ordered text sections.
    """

    @abstractmethod
    def extract_sections(self, file_bytes: bytes, filename: str) -> List[ExtractedSection]:
        """
        Extracts the readable text of a document, section by section, in reading order.

        Args:
            file_bytes: Raw content of the document.
            filename: Original file name (for logging only).

        Returns:
            The document's sections in reading order. Sections may have no paragraphs
            when the source part carries no text.

        Raises:
            ExtractMalformedError: If the container or file structure cannot be parsed.
            UnsupportedFormatError: If the adapter cannot handle the requested format.
        """
        pass
