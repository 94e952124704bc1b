"""
Broker wire contract.

Every job travels as a ``JobMessage`` envelope whose ``kind`` tag selects the
payload model. RPC traffic uses ``RpcRequest`` / ``RpcResponse``.
"""
import json
import uuid
from enum import Enum
from typing import Any, Dict, Optional, Type, Union
from pydantic import BaseModel, Field, ValidationError

from content_pipeline.core.exceptions import InvalidMessageError
from content_pipeline.domain.models import DocumentFormat, IndexStage


class JobKind(str, Enum):
    EXTRACT_REQUESTED = "ExtractRequested"
    INDEX_FULLTEXT_REQUESTED = "IndexFulltextRequested"
    INDEX_EMBEDDING_REQUESTED = "IndexEmbeddingRequested"
    INDEX_COMPLETED = "IndexCompleted"
    INDEX_FAILED = "IndexFailed"
    CLEANUP_REQUESTED = "CleanupRequested"


class ExtractRequestedPayload(BaseModel):
    storage_key: str = Field(..., min_length=1)
    format: DocumentFormat
    original_name: str


class IndexRequestedPayload(BaseModel):
    stage: IndexStage
    chunk_count: int = Field(..., ge=0)


class IndexCompletedPayload(BaseModel):
    stage: IndexStage
    indexed_chunks: int = Field(..., ge=0)


class IndexFailedPayload(BaseModel):
    stage: IndexStage
    reason: str = Field(..., min_length=1)


class CleanupRequestedPayload(BaseModel):
    storage_key: Optional[str] = None


PAYLOAD_TYPES: Dict[JobKind, Type[BaseModel]] = {
    JobKind.EXTRACT_REQUESTED: ExtractRequestedPayload,
    JobKind.INDEX_FULLTEXT_REQUESTED: IndexRequestedPayload,
    JobKind.INDEX_EMBEDDING_REQUESTED: IndexRequestedPayload,
    JobKind.INDEX_COMPLETED: IndexCompletedPayload,
    JobKind.INDEX_FAILED: IndexFailedPayload,
    JobKind.CLEANUP_REQUESTED: CleanupRequestedPayload,
}

INDEX_REQUEST_KINDS = {
    IndexStage.FULLTEXT: JobKind.INDEX_FULLTEXT_REQUESTED,
    IndexStage.EMBEDDING: JobKind.INDEX_EMBEDDING_REQUESTED,
}


class JobMessage(BaseModel):
    kind: JobKind
    document_id: uuid.UUID
    attempt_count: int = Field(..., ge=0)
    correlation_id: Optional[uuid.UUID] = None
    payload: Dict[str, Any]

    @classmethod
    def build(
        cls,
        kind: JobKind,
        document_id: uuid.UUID,
        payload: BaseModel,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> "JobMessage":
        if not isinstance(payload, PAYLOAD_TYPES[kind]):
            raise TypeError(f"{kind.value} expects {PAYLOAD_TYPES[kind].__name__}, got {type(payload).__name__}")
        return cls(
            kind=kind,
            document_id=document_id,
            attempt_count=0,
            correlation_id=correlation_id,
            payload=payload.model_dump(mode="json"),
        )

    def parsed_payload(self) -> Union[
        ExtractRequestedPayload, IndexRequestedPayload, IndexCompletedPayload,
        IndexFailedPayload, CleanupRequestedPayload,
    ]:
        return PAYLOAD_TYPES[self.kind].model_validate(self.payload)

    def next_attempt(self) -> "JobMessage":
        return self.model_copy(update={"attempt_count": self.attempt_count + 1})

    def encode(self) -> bytes:
        return self.model_dump_json().encode("utf-8")


def decode_job_message(raw: bytes) -> JobMessage:
    """
    Decodes and validates an envelope, including its kind-specific payload.

    Raises:
        InvalidMessageError: For undecodable JSON, unknown kinds or invalid payloads.
    """
    try:
        message = JobMessage.model_validate_json(raw)
        message.parsed_payload()
    except ValidationError as e:
        raise InvalidMessageError(f"Invalid job message: {e.error_count()} validation error(s): {e}") from e
    return message


def peek_document_id(raw: bytes) -> Optional[uuid.UUID]:
    """Best-effort recovery of ``document_id`` from a message that failed validation."""
    try:
        data = json.loads(raw)
        return uuid.UUID(str(data["document_id"]))
    except (ValueError, TypeError, KeyError):
        return None


# --- RPC ---

class RpcErrorCode(str, Enum):
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    INTERNAL_SERVER_ERROR = "internal_server_error"


class RpcRequest(BaseModel):
    method: str = Field(..., min_length=1)
    correlation_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    params: Dict[str, Any] = Field(default_factory=dict)


class RpcError(BaseModel):
    code: RpcErrorCode
    message: str


class RpcResponse(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    correlation_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[RpcError] = None

    @classmethod
    def ok(cls, data: Dict[str, Any], correlation_id: Optional[str] = None) -> "RpcResponse":
        return cls(status="ok", data=data, correlation_id=correlation_id)

    @classmethod
    def fail(cls, code: RpcErrorCode, message: str, correlation_id: Optional[str] = None) -> "RpcResponse":
        return cls(status="error", error=RpcError(code=code, message=message), correlation_id=correlation_id)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"
