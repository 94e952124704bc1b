# File: content_pipeline/dependencies.py
"""
Builds the concrete adapters and use cases for each process role.
"""
from typing import List, Optional

import structlog

from content_pipeline.application.ports.blob_store_port import BlobStorePort
from content_pipeline.application.ports.chunking_port import ChunkingPort
from content_pipeline.application.ports.document_store_port import DocumentStorePort
from content_pipeline.application.ports.embedding_model_port import EmbeddingModelPort
from content_pipeline.application.ports.message_transport_port import MessageTransportPort
from content_pipeline.application.use_cases.cleanup_document_use_case import CleanupDocumentUseCase
from content_pipeline.application.use_cases.extract_content_use_case import ExtractContentUseCase
from content_pipeline.application.use_cases.index_document_use_case import (
    EmbeddingIndexDispatcher, FulltextIndexDispatcher, IndexDispatcher,
)
from content_pipeline.application.use_cases.pipeline_orchestrator import PipelineOrchestrator, PipelineTopics
from content_pipeline.core.config import settings
from content_pipeline.domain.models import DocumentFormat

from content_pipeline.infrastructure.chunkers.paragraph_chunker_adapter import ParagraphChunkerAdapter
from content_pipeline.infrastructure.extractors import (
    CompositeExtractorAdapter,
    EpubAdapter,
    PdfAdapter,
    TxtAdapter,
)
from content_pipeline.infrastructure.embedding_models.fastembed_adapter import FastEmbedAdapter
from content_pipeline.infrastructure.embedding_models.openai_adapter import OpenAIAdapter
from content_pipeline.infrastructure.indexers.meilisearch_fulltext_adapter import MeilisearchFulltextAdapter
from content_pipeline.infrastructure.indexers.milvus_vector_adapter import MilvusVectorAdapter
from content_pipeline.infrastructure.messaging.kafka_transport import KafkaMessageTransport
from content_pipeline.infrastructure.persistence.postgres_document_store import (
    PostgresDocumentStore, get_sync_engine,
)
from content_pipeline.infrastructure.storage.s3_blob_store import S3BlobStore

log = structlog.get_logger(__name__)


def get_document_store(dsn: Optional[str] = None) -> DocumentStorePort:
    return PostgresDocumentStore(get_sync_engine(dsn))


def get_transport() -> MessageTransportPort:
    return KafkaMessageTransport()


def get_blob_store() -> BlobStorePort:
    return S3BlobStore()


def get_orchestrator(
    document_store: DocumentStorePort,
    transport: MessageTransportPort,
    blob_store: Optional[BlobStorePort] = None,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        document_store=document_store,
        transport=transport,
        topics=PipelineTopics.from_settings(),
        blob_store=blob_store,
    )


def get_extract_content_use_case() -> ExtractContentUseCase:
    """
    Returns an ExtractContentUseCase wired with one extractor per supported
    format and the paragraph chunker.
    """
    chunking_adapter: ChunkingPort = ParagraphChunkerAdapter()

    composite_extractor = CompositeExtractorAdapter(
        extractors={
            DocumentFormat.EPUB: EpubAdapter(),
            DocumentFormat.PDF: PdfAdapter(),
            DocumentFormat.TEXT: TxtAdapter(),
        }
    )

    return ExtractContentUseCase(
        extractor=composite_extractor,
        chunking_port=chunking_adapter,
        max_chunk_chars=settings.MAX_CHUNK_CHARS,
    )


def get_embedding_model() -> EmbeddingModelPort:
    """Selects and loads the embedding model configured by EMBEDDING_PROVIDER."""
    if settings.EMBEDDING_PROVIDER == "openai":
        model: EmbeddingModelPort = OpenAIAdapter()
    else:
        model = FastEmbedAdapter()
    model.initialize_model()
    log.info("Embedding model ready", **model.get_model_info())
    return model


def get_fulltext_dispatcher() -> FulltextIndexDispatcher:
    backend = MeilisearchFulltextAdapter()
    backend.ensure_index()
    return FulltextIndexDispatcher(backend=backend, batch_size=settings.INDEX_BATCH_SIZE)


def get_embedding_dispatcher(embedding_model: Optional[EmbeddingModelPort] = None) -> EmbeddingIndexDispatcher:
    embedding_model = embedding_model or get_embedding_model()
    backend = MilvusVectorAdapter(dimension=embedding_model.dimension)
    backend.ensure_collection()
    return EmbeddingIndexDispatcher(
        embedding_model=embedding_model,
        backend=backend,
        batch_size=settings.INDEX_BATCH_SIZE,
    )


def get_cleanup_use_case(
    document_store: DocumentStorePort,
    blob_store: Optional[BlobStorePort] = None,
    dispatchers: Optional[List[IndexDispatcher]] = None,
) -> CleanupDocumentUseCase:
    """
    Cleanup removes entries from both indexes. Without explicit dispatchers the
    vector side is wired without loading an embedding model, since deleting
    needs none.
    """
    if dispatchers is None:
        dispatchers = [
            FulltextIndexDispatcher(backend=MeilisearchFulltextAdapter()),
            EmbeddingIndexDispatcher(embedding_model=None, backend=MilvusVectorAdapter()),
        ]
    return CleanupDocumentUseCase(
        document_store=document_store,
        dispatchers=dispatchers,
        blob_store=blob_store,
    )

