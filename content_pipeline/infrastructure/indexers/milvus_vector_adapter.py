import json
import uuid
from typing import Any, Dict, List, Optional

import structlog
from pymilvus import (
    Collection, CollectionSchema, FieldSchema, DataType, connections,
    utility, MilvusException
)

from content_pipeline.application.ports.index_ports import VectorIndexPort
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import IndexBackendError

log = structlog.get_logger(__name__)

MILVUS_PK_FIELD = "pk_id"
MILVUS_VECTOR_FIELD = "embedding"
MILVUS_CONTENT_FIELD = "content"
MILVUS_DOCUMENT_ID_FIELD = "document_id"
MILVUS_SEQUENCE_FIELD = "sequence_index"
MILVUS_SECTION_TITLE_FIELD = "section_title"
_SECTION_TITLE_MAX_BYTES = 1024

# Milvus caps a single query result window
_QUERY_PAGE_SIZE = 16384


def truncate_utf8_bytes(s: str, max_bytes: int) -> str:
    b = s.encode('utf-8', errors='ignore')
    if len(b) <= max_bytes:
        return s
    return b[:max_bytes].decode('utf-8', errors='ignore')


class MilvusVectorAdapter(VectorIndexPort):
    """Vector backend on a Milvus (or Zilliz) collection."""

    def __init__(
        self,
        collection_name: Optional[str] = None,
        dimension: Optional[int] = None,
        alias: str = "content_pipeline_indexing",
    ):
        self.collection_name = collection_name or settings.MILVUS_COLLECTION_NAME
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self.alias = alias
        self._collection: Optional[Collection] = None
        self.log = log.bind(component="MilvusVectorAdapter", collection=self.collection_name, milvus_alias=alias)

    def _connect(self) -> None:
        if self.alias in connections.list_connections() and connections.has_connection(self.alias):
            return
        self.log.info("Connecting to Milvus...", uri=settings.MILVUS_URI)
        try:
            connections.connect(
                alias=self.alias,
                uri=settings.MILVUS_URI,
                timeout=settings.MILVUS_GRPC_TIMEOUT,
                token=settings.MILVUS_TOKEN.get_secret_value() if settings.MILVUS_TOKEN else None,
            )
        except MilvusException as e:
            self.log.error("Failed to connect to Milvus.", error=str(e))
            raise IndexBackendError(f"Milvus connection failed: {e}") from e
        self.log.info("Connected to Milvus.")

    def _get_collection(self) -> Collection:
        if self._collection is not None:
            return self._collection
        self._connect()
        try:
            if not utility.has_collection(self.collection_name, using=self.alias):
                self.log.warning("Milvus collection not found. Attempting to create.")
                collection = self._create_collection()
            else:
                collection = Collection(name=self.collection_name, using=self.alias)
            self.log.info("Loading Milvus collection into memory...")
            collection.load()
        except MilvusException as e:
            self.log.error("Failed during Milvus collection access/load", error=str(e), exc_info=True)
            raise IndexBackendError(f"Milvus collection access error: {e}") from e
        self._collection = collection
        return collection

    def _create_collection(self) -> Collection:
        fields = [
            FieldSchema(name=MILVUS_PK_FIELD, dtype=DataType.VARCHAR, max_length=255, is_primary=True),
            FieldSchema(name=MILVUS_VECTOR_FIELD, dtype=DataType.FLOAT_VECTOR, dim=self.dimension),
            FieldSchema(name=MILVUS_CONTENT_FIELD, dtype=DataType.VARCHAR, max_length=settings.MILVUS_CONTENT_FIELD_MAX_LENGTH),
            FieldSchema(name=MILVUS_DOCUMENT_ID_FIELD, dtype=DataType.VARCHAR, max_length=64),
            FieldSchema(name=MILVUS_SEQUENCE_FIELD, dtype=DataType.INT64),
            FieldSchema(name=MILVUS_SECTION_TITLE_FIELD, dtype=DataType.VARCHAR, max_length=_SECTION_TITLE_MAX_BYTES),
        ]
        schema = CollectionSchema(fields, description="Document chunk embeddings", enable_dynamic_field=False)
        collection = Collection(name=self.collection_name, schema=schema, using=self.alias, consistency_level="Strong")
        self.log.info("Collection created. Creating indexes...", embedding_dim=self.dimension)
        collection.create_index(
            field_name=MILVUS_VECTOR_FIELD,
            index_params=settings.MILVUS_INDEX_PARAMS,
            index_name=f"{MILVUS_VECTOR_FIELD}_hnsw_idx",
        )
        collection.create_index(field_name=MILVUS_DOCUMENT_ID_FIELD, index_name=f"{MILVUS_DOCUMENT_ID_FIELD}_idx")
        return collection

    def ensure_collection(self) -> None:
        self._get_collection()

    def upsert_points(self, points: List[Dict[str, Any]]) -> None:
        if not points:
            return
        max_content_len = settings.MILVUS_CONTENT_FIELD_MAX_LENGTH
        data = [
            [p["pk"] for p in points],
            [p["vector"] for p in points],
            [truncate_utf8_bytes(p["text"], max_content_len) for p in points],
            [str(p["document_id"]) for p in points],
            [p["sequence_index"] for p in points],
            [truncate_utf8_bytes(p.get("section_title") or "", _SECTION_TITLE_MAX_BYTES) for p in points],
        ]
        collection = self._get_collection()
        try:
            mutation_result = collection.insert(data)
            collection.flush()
        except MilvusException as e:
            self.log.error("Failed to insert data into Milvus", error=str(e), exc_info=True)
            raise IndexBackendError(f"Milvus insertion failed: {e}") from e
        if mutation_result.insert_count != len(points):
            raise IndexBackendError(
                f"Milvus insert count mismatch: expected {len(points)}, inserted {mutation_result.insert_count}"
            )
        self.log.debug("Points inserted into Milvus", count=len(points))

    def delete_points(self, ids: List[str]) -> None:
        if not ids:
            return
        collection = self._get_collection()
        try:
            collection.delete(expr=f'{MILVUS_PK_FIELD} in {json.dumps(ids)}')
        except MilvusException as e:
            self.log.error("Milvus delete by PK failed", error=str(e))
            raise IndexBackendError(f"Milvus delete failed: {e}") from e

    def delete_by_document(self, document_id: uuid.UUID) -> int:
        del_log = self.log.bind(document_id=str(document_id))
        expr = f'{MILVUS_DOCUMENT_ID_FIELD} == "{document_id}"'
        collection = self._get_collection()
        deleted = 0
        try:
            while True:
                query_res = collection.query(expr=expr, output_fields=[MILVUS_PK_FIELD], limit=_QUERY_PAGE_SIZE)
                pks = [item[MILVUS_PK_FIELD] for item in query_res if MILVUS_PK_FIELD in item]
                if not pks:
                    break
                collection.delete(expr=f'{MILVUS_PK_FIELD} in {json.dumps(pks)}')
                deleted += len(pks)
                if len(pks) < _QUERY_PAGE_SIZE:
                    break
        except MilvusException as e:
            del_log.error("Milvus delete error (query or delete phase)", error=str(e), exc_info=True)
            raise IndexBackendError(f"Milvus delete by document failed: {e}") from e
        del_log.info("Milvus points deleted for document", deleted_count=deleted)
        return deleted
