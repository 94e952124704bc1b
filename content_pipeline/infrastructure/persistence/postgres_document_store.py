# File: content_pipeline/infrastructure/persistence/postgres_document_store.py
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import structlog
from sqlalchemy import (
    create_engine, select, insert, update, delete, and_, Engine, Table, MetaData, Column,
    Uuid, Integer, Text, String, DateTime, UniqueConstraint, ForeignKeyConstraint, Index
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from content_pipeline.application.ports.document_store_port import DocumentStorePort
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import DocumentStoreUnavailableError, DuplicateStorageKeyError
from content_pipeline.core.metrics import STATE_TRANSITIONS_TOTAL
from content_pipeline.domain.models import Chunk, Document, DocumentState, DocumentFormat, IndexStage

log = structlog.get_logger(__name__)

_metadata = MetaData()

source_meta_table = Table(
    'source_meta',
    _metadata,
    Column('id', Uuid(as_uuid=True), primary_key=True),
    Column('owner_id', Uuid(as_uuid=True), nullable=False),
    Column('storage_key', String(512), nullable=False, unique=True),
    Column('format', String(16), nullable=False),
    Column('original_name', Text, nullable=False),
    Column('added_at', DateTime(timezone=True), nullable=False),
    Column('extracted_at', DateTime(timezone=True)),
    Column('state', String(32), nullable=False),
    Column('failure_reason', Text),
    Column('fulltext_indexed_at', DateTime(timezone=True)),
    Column('embedding_indexed_at', DateTime(timezone=True)),
    Column('deletion_requested_at', DateTime(timezone=True)),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_source_meta_owner_id', 'owner_id'),
    Index('idx_source_meta_state_updated_at', 'state', 'updated_at'),
)

document_chunks_table = Table(
    'document_chunks',
    _metadata,
    Column('document_id', Uuid(as_uuid=True), nullable=False),
    Column('sequence_index', Integer, nullable=False),
    Column('content', Text, nullable=False),
    Column('source_locator', Text, nullable=False),
    Column('section_title', Text),
    UniqueConstraint('document_id', 'sequence_index', name='uq_document_chunk_sequence'),
    ForeignKeyConstraint(['document_id'], ['source_meta.id'], name='fk_document_chunks_document', ondelete='CASCADE'),
    Index('idx_document_chunks_document_id', 'document_id'),
)

_STAGE_COLUMNS = {
    IndexStage.FULLTEXT: source_meta_table.c.fulltext_indexed_at,
    IndexStage.EMBEDDING: source_meta_table.c.embedding_indexed_at,
}

# Columns a transition may write besides state
_WRITABLE_FIELDS = {"extracted_at", "failure_reason"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_sync_engine(dsn: Optional[str] = None) -> Engine:
    dsn = dsn or settings.POSTGRES_DSN
    log.info("Creating SQLAlchemy synchronous engine...", dialect=dsn.split(":", 1)[0])
    return create_engine(
        dsn,
        pool_size=settings.POSTGRES_POOL_SIZE,
        pool_recycle=1800,
        pool_pre_ping=True,
    )


def _as_states(states: Union[DocumentState, Sequence[DocumentState]]) -> List[str]:
    if isinstance(states, DocumentState):
        return [states.value]
    return [s.value for s in states]


def _row_to_document(row) -> Document:
    return Document(
        id=row.id,
        owner_id=row.owner_id,
        storage_key=row.storage_key,
        format=DocumentFormat(row.format),
        original_name=row.original_name,
        added_at=row.added_at,
        extracted_at=row.extracted_at,
        state=DocumentState(row.state),
        failure_reason=row.failure_reason,
        fulltext_indexed_at=row.fulltext_indexed_at,
        embedding_indexed_at=row.embedding_indexed_at,
        deletion_requested_at=row.deletion_requested_at,
        updated_at=row.updated_at,
    )


class PostgresDocumentStore(DocumentStorePort):
    """
    SQLAlchemy Core implementation of the document store.

    Transitions are single ``UPDATE ... WHERE id = :id AND state IN (...)`` statements
    so the database row lock is the only arbiter between concurrent workers.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.log = log.bind(component="PostgresDocumentStore")

    def create_schema(self) -> None:
        try:
            _metadata.create_all(self.engine)
            self.log.info("Document store schema ensured.", tables=list(_metadata.tables))
        except SQLAlchemyError as e:
            self.log.error("Failed to create document store schema", error=str(e), exc_info=True)
            raise DocumentStoreUnavailableError(f"Schema creation failed: {e}") from e

    def create(self, document: Document) -> Document:
        now = _utcnow()
        values = document.model_dump()
        values["format"] = document.format.value
        values["state"] = document.state.value
        values["updated_at"] = now
        try:
            with self.engine.begin() as connection:
                connection.execute(insert(source_meta_table).values(**values))
        except IntegrityError as e:
            self.log.warning("Storage key already registered", storage_key=document.storage_key)
            raise DuplicateStorageKeyError(f"Storage key already in use: {document.storage_key}") from e
        except SQLAlchemyError as e:
            self.log.error("SQLAlchemyError creating document", document_id=str(document.id), error=str(e), exc_info=True)
            raise DocumentStoreUnavailableError(f"Document creation failed: {e}") from e
        self.log.info("Document created", document_id=str(document.id), storage_key=document.storage_key)
        return document.model_copy(update={"updated_at": now})

    def get(self, document_id: uuid.UUID) -> Optional[Document]:
        query = select(source_meta_table).where(source_meta_table.c.id == document_id)
        try:
            with self.engine.connect() as connection:
                row = connection.execute(query).first()
        except SQLAlchemyError as e:
            self.log.error("SQLAlchemyError reading document", document_id=str(document_id), error=str(e))
            raise DocumentStoreUnavailableError(f"Document read failed: {e}") from e
        return _row_to_document(row) if row is not None else None

    def delete(self, document_id: uuid.UUID) -> bool:
        try:
            with self.engine.begin() as connection:
                # Explicit delete so engines without enforced FKs behave the same
                connection.execute(
                    delete(document_chunks_table).where(document_chunks_table.c.document_id == document_id)
                )
                result = connection.execute(delete(source_meta_table).where(source_meta_table.c.id == document_id))
        except SQLAlchemyError as e:
            self.log.error("SQLAlchemyError deleting document", document_id=str(document_id), error=str(e))
            raise DocumentStoreUnavailableError(f"Document delete failed: {e}") from e
        deleted = result.rowcount == 1
        self.log.info("Document delete executed", document_id=str(document_id), deleted=deleted)
        return deleted

    def compare_and_set(
        self,
        document_id: uuid.UUID,
        expected_state: Union[DocumentState, Sequence[DocumentState]],
        new_state: DocumentState,
        extra_fields: Optional[Dict[str, Any]] = None,
        updated_before: Optional[datetime] = None,
    ) -> bool:
        extra_fields = dict(extra_fields or {})
        unknown = set(extra_fields) - _WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable by a transition: {sorted(unknown)}")

        conditions = [
            source_meta_table.c.id == document_id,
            source_meta_table.c.state.in_(_as_states(expected_state)),
            source_meta_table.c.deletion_requested_at.is_(None),
        ]
        if "extracted_at" in extra_fields:
            # extracted_at is written exactly once
            conditions.append(source_meta_table.c.extracted_at.is_(None))
        if updated_before is not None:
            conditions.append(source_meta_table.c.updated_at < updated_before)

        statement = (
            update(source_meta_table)
            .where(and_(*conditions))
            .values(state=new_state.value, updated_at=_utcnow(), **extra_fields)
        )
        return self._execute_transition(document_id, statement, new_state)

    def save_extraction(self, document_id: uuid.UUID, chunks: List[Chunk], extracted_at: datetime) -> bool:
        statement = (
            update(source_meta_table)
            .where(and_(
                source_meta_table.c.id == document_id,
                source_meta_table.c.state == DocumentState.EXTRACTION_IN_PROGRESS.value,
                source_meta_table.c.extracted_at.is_(None),
                source_meta_table.c.deletion_requested_at.is_(None),
            ))
            .values(state=DocumentState.EXTRACTED.value, extracted_at=extracted_at, updated_at=_utcnow())
        )
        rows = [
            {
                "document_id": document_id,
                "sequence_index": chunk.sequence_index,
                "content": chunk.text,
                "source_locator": chunk.source_locator,
                "section_title": chunk.section_title,
            }
            for chunk in chunks
        ]
        save_log = self.log.bind(document_id=str(document_id), num_chunks=len(rows))
        try:
            with self.engine.begin() as connection:
                # The state update goes first so a rejected transition writes nothing
                result = connection.execute(statement)
                if result.rowcount == 1:
                    connection.execute(
                        delete(document_chunks_table).where(document_chunks_table.c.document_id == document_id)
                    )
                    if rows:
                        connection.execute(insert(document_chunks_table), rows)
        except SQLAlchemyError as e:
            save_log.error("SQLAlchemyError saving extraction result", error=str(e), exc_info=True)
            raise DocumentStoreUnavailableError(f"Saving extraction failed: {e}") from e

        if result.rowcount != 1:
            save_log.info("Extraction result rejected, document no longer in ExtractionInProgress.")
            STATE_TRANSITIONS_TOTAL.labels(to_state=DocumentState.EXTRACTED.value, result="rejected").inc()
            return False
        save_log.info("Extraction result persisted, document is Extracted.")
        STATE_TRANSITIONS_TOTAL.labels(to_state=DocumentState.EXTRACTED.value, result="applied").inc()
        return True

    def load_chunks(self, document_id: uuid.UUID) -> List[Chunk]:
        query = (
            select(document_chunks_table)
            .where(document_chunks_table.c.document_id == document_id)
            .order_by(document_chunks_table.c.sequence_index)
        )
        try:
            with self.engine.connect() as connection:
                rows = connection.execute(query).all()
        except SQLAlchemyError as e:
            self.log.error("SQLAlchemyError loading chunks", document_id=str(document_id), error=str(e))
            raise DocumentStoreUnavailableError(f"Loading chunks failed: {e}") from e
        return [
            Chunk(document_id=row.document_id, sequence_index=row.sequence_index,
                  text=row.content, source_locator=row.source_locator, section_title=row.section_title)
            for row in rows
        ]

    def mark_stage_indexed(self, document_id: uuid.UUID, stage: IndexStage, indexed_at: datetime) -> bool:
        column = _STAGE_COLUMNS[stage]
        statement = (
            update(source_meta_table)
            .where(and_(
                source_meta_table.c.id == document_id,
                source_meta_table.c.state.in_([DocumentState.EXTRACTED.value, DocumentState.INDEXING_IN_PROGRESS.value]),
                column.is_(None),
                source_meta_table.c.deletion_requested_at.is_(None),
            ))
            .values({column.name: indexed_at, "updated_at": _utcnow()})
        )
        try:
            with self.engine.begin() as connection:
                recorded = connection.execute(statement).rowcount == 1
        except SQLAlchemyError as e:
            self.log.error("SQLAlchemyError recording stage completion", document_id=str(document_id),
                           stage=stage.value, error=str(e))
            raise DocumentStoreUnavailableError(f"Recording stage completion failed: {e}") from e
        self.log.debug("Stage completion write executed", document_id=str(document_id), stage=stage.value, recorded=recorded)
        return recorded

    def promote_if_fully_indexed(self, document_id: uuid.UUID) -> bool:
        statement = (
            update(source_meta_table)
            .where(and_(
                source_meta_table.c.id == document_id,
                source_meta_table.c.state == DocumentState.INDEXING_IN_PROGRESS.value,
                source_meta_table.c.fulltext_indexed_at.is_not(None),
                source_meta_table.c.embedding_indexed_at.is_not(None),
                source_meta_table.c.deletion_requested_at.is_(None),
            ))
            .values(state=DocumentState.INDEXED.value, updated_at=_utcnow())
        )
        return self._execute_transition(document_id, statement, DocumentState.INDEXED)

    def mark_for_deletion(self, document_id: uuid.UUID, requested_at: datetime) -> bool:
        statement = (
            update(source_meta_table)
            .where(and_(
                source_meta_table.c.id == document_id,
                source_meta_table.c.deletion_requested_at.is_(None),
            ))
            .values(deletion_requested_at=requested_at, updated_at=_utcnow())
        )
        try:
            with self.engine.begin() as connection:
                marked = connection.execute(statement).rowcount == 1
        except SQLAlchemyError as e:
            self.log.error("SQLAlchemyError marking document for deletion", document_id=str(document_id), error=str(e))
            raise DocumentStoreUnavailableError(f"Marking for deletion failed: {e}") from e
        return marked

    def find_stale(self, states: Iterable[DocumentState], updated_before: datetime) -> List[Document]:
        query = (
            select(source_meta_table)
            .where(and_(
                source_meta_table.c.state.in_([s.value for s in states]),
                source_meta_table.c.updated_at < updated_before,
                source_meta_table.c.deletion_requested_at.is_(None),
            ))
            .order_by(source_meta_table.c.updated_at)
        )
        try:
            with self.engine.connect() as connection:
                rows = connection.execute(query).all()
        except SQLAlchemyError as e:
            self.log.error("SQLAlchemyError querying stale documents", error=str(e))
            raise DocumentStoreUnavailableError(f"Stale document query failed: {e}") from e
        return [_row_to_document(row) for row in rows]

    def _execute_transition(self, document_id: uuid.UUID, statement, new_state: DocumentState) -> bool:
        update_log = self.log.bind(document_id=str(document_id), new_state=new_state.value)
        try:
            with self.engine.begin() as connection:
                result = connection.execute(statement)
        except SQLAlchemyError as e:
            update_log.error("SQLAlchemyError during state transition", error=str(e), exc_info=True)
            raise DocumentStoreUnavailableError(f"State transition failed: {e}") from e

        if result.rowcount == 1:
            update_log.info("Document state transition applied.")
            STATE_TRANSITIONS_TOTAL.labels(to_state=new_state.value, result="applied").inc()
            return True
        update_log.debug("Document state transition rejected by compare-and-set.")
        STATE_TRANSITIONS_TOTAL.labels(to_state=new_state.value, result="rejected").inc()
        return False
