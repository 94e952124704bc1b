"""Unit tests for ExtractContentUseCase: sections to contiguous chunks."""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock

import pytest

from content_pipeline.application.use_cases.extract_content_use_case import ExtractContentUseCase
from content_pipeline.core.exceptions import ExtractEmptyError
from content_pipeline.domain.models import DocumentFormat, ExtractedSection
from content_pipeline.infrastructure.chunkers.paragraph_chunker_adapter import ParagraphChunkerAdapter
from content_pipeline.infrastructure.extractors import CompositeExtractorAdapter, EpubAdapter, TxtAdapter


def _make_use_case(max_chunk_chars: int = 1000) -> ExtractContentUseCase:
    extractor = CompositeExtractorAdapter(extractors={
        DocumentFormat.EPUB: EpubAdapter(),
        DocumentFormat.TEXT: TxtAdapter(),
    })
    return ExtractContentUseCase(extractor, ParagraphChunkerAdapter(), max_chunk_chars=max_chunk_chars)


class TestChunkSequence:
    def test_sequence_indexes_are_contiguous_from_zero(self, sample_epub_bytes: bytes) -> None:
        document_id = uuid.uuid4()
        chunks = _make_use_case(max_chunk_chars=30).execute(document_id, sample_epub_bytes, DocumentFormat.EPUB,
                                                            "book.epub")

        assert [c.sequence_index for c in chunks] == list(range(len(chunks)))
        assert all(c.document_id == document_id for c in chunks)
        assert all(0 < len(c.text) <= 30 for c in chunks)

    def test_chunks_never_span_sections(self, sample_epub_bytes: bytes) -> None:
        chunks = _make_use_case().execute(uuid.uuid4(), sample_epub_bytes, DocumentFormat.EPUB, "book.epub")

        # One chunk per chapter at the default limit
        assert len(chunks) == 3
        assert [c.source_locator.split("#")[0].split(":", 1)[1] for c in chunks] == [
            "chap_01.xhtml", "chap_02.xhtml", "chap_03.xhtml",
        ]
        assert all(c.source_locator.endswith("#0") for c in chunks)

    def test_chunks_carry_their_chapter_title(self, sample_epub_bytes: bytes) -> None:
        chunks = _make_use_case(max_chunk_chars=30).execute(uuid.uuid4(), sample_epub_bytes, DocumentFormat.EPUB,
                                                            "book.epub")

        titles = [c.section_title for c in chunks]
        assert titles[0] == "Chapter One"
        assert titles[-1] == "Chapter Three"
        assert set(titles) == {"Chapter One", "Chapter Two", "Chapter Three"}

    def test_reextraction_is_identical(self, sample_text_bytes: bytes) -> None:
        use_case = _make_use_case(max_chunk_chars=80)
        document_id = uuid.uuid4()

        first = use_case.execute(document_id, sample_text_bytes, DocumentFormat.TEXT, "notes.txt")
        second = use_case.execute(document_id, sample_text_bytes, DocumentFormat.TEXT, "notes.txt")

        assert first == second

    def test_empty_sections_are_skipped(self) -> None:
        extractor = MagicMock(spec=CompositeExtractorAdapter)
        extractor.extract_sections_for.return_value = [
            ExtractedSection(locator="page:1", paragraphs=[]),
            ExtractedSection(locator="page:2", paragraphs=["Only text."]),
        ]
        use_case = ExtractContentUseCase(extractor, ParagraphChunkerAdapter(), max_chunk_chars=100)

        chunks = use_case.execute(uuid.uuid4(), b"%PDF", DocumentFormat.PDF, "scan.pdf")

        assert len(chunks) == 1
        assert chunks[0].sequence_index == 0
        assert chunks[0].source_locator == "page:2#0"


class TestEmptySource:
    def test_no_text_raises_empty_source(self) -> None:
        with pytest.raises(ExtractEmptyError) as exc_info:
            _make_use_case().execute(uuid.uuid4(), b"   \n\n  ", DocumentFormat.TEXT, "blank.txt")
        assert exc_info.value.reason == "empty_source"
