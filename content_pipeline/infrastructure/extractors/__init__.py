from .base_extractor import BaseExtractorAdapter
from .epub_adapter import EpubAdapter
from .pdf_adapter import PdfAdapter
from .txt_adapter import TxtAdapter
from .composite_extractor_adapter import CompositeExtractorAdapter

__all__ = [
    "BaseExtractorAdapter",
    "EpubAdapter",
    "PdfAdapter",
    "TxtAdapter",
    "CompositeExtractorAdapter",
]
