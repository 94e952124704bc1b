"""Shared pytest fixtures for the content pipeline test suite."""

from __future__ import annotations

import os

# Required settings must exist before content_pipeline.core.config is imported
os.environ.setdefault("PIPELINE_KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
os.environ.setdefault("PIPELINE_AWS_S3_BUCKET_NAME", "test-documents")

import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest
from ebooklib import epub
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from content_pipeline.application.use_cases.pipeline_orchestrator import PipelineOrchestrator, PipelineTopics
from content_pipeline.domain.models import Document, DocumentFormat
from content_pipeline.infrastructure.persistence.postgres_document_store import PostgresDocumentStore
from doubles import FakeBlobStore, InMemoryTransport

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    """SQLite in-memory engine shared across connections."""
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> PostgresDocumentStore:
    document_store = PostgresDocumentStore(engine)
    document_store.create_schema()
    return document_store


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def topics() -> PipelineTopics:
    return PipelineTopics(
        extract="t.extract",
        fulltext="t.fulltext",
        embedding="t.embedding",
        completion="t.completion",
        cleanup="t.cleanup",
    )


@pytest.fixture
def orchestrator(store, transport, topics, blob_store) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        document_store=store,
        transport=transport,
        topics=topics,
        blob_store=blob_store,
        stale_timeout_seconds=1800,
    )


@pytest.fixture
def make_document(store):
    """Factory inserting an Uploaded document and returning it."""

    def _make(document_format: DocumentFormat = DocumentFormat.TEXT, name: str = "notes.txt") -> Document:
        document_id = uuid.uuid4()
        owner_id = uuid.uuid4()
        return store.create(Document(
            id=document_id,
            owner_id=owner_id,
            storage_key=f"{owner_id}/{document_id}.{document_format.value}",
            format=document_format,
            original_name=name,
            added_at=datetime.now(timezone.utc),
        ))

    return _make


@pytest.fixture
def sample_text_bytes() -> bytes:
    paragraphs = [
        "The harbour was quiet before dawn. Gulls circled over the moored boats.",
        "Maria walked along the pier, counting the lanterns that still burned.",
        "By the time the sun rose, the first ferry had already left for the islands.",
    ]
    return "\n\n".join(paragraphs).encode("utf-8")


@pytest.fixture
def sample_epub_bytes(tmp_path: Path) -> bytes:
    """A three-chapter EPUB written with ebooklib, navigation document first in the spine."""
    book = epub.EpubBook()
    book.set_identifier("test-book-0001")
    book.set_title("A Small Test Book")
    book.set_language("en")
    book.add_author("Test Author")

    chapters = []
    for number, (title, paragraphs) in enumerate([
        ("Chapter One", ["It began with a letter.", "Nobody knew who had sent it."]),
        ("Chapter Two", ["The second chapter has <em>inline</em> markup.", "And a second paragraph."]),
        ("Chapter Three", ["The end came quickly."]),
    ], start=1):
        chapter = epub.EpubHtml(title=title, file_name=f"chap_{number:02d}.xhtml", lang="en")
        body = "".join(f"<p>{p}</p>" for p in paragraphs)
        chapter.content = f"<html><head><title>{title}</title></head><body><h1>{title}</h1>{body}</body></html>"
        book.add_item(chapter)
        chapters.append(chapter)

    book.toc = tuple(epub.Link(c.file_name, c.title, c.file_name.split(".")[0]) for c in chapters)
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = ["nav"] + chapters

    path = tmp_path / "book.epub"
    epub.write_epub(str(path), book)
    return path.read_bytes()
