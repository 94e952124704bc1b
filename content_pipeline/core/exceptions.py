# File: content_pipeline/core/exceptions.py
"""
Error taxonomy shared by every stage.

Handlers raise ``TransientError`` subclasses for failures worth another attempt
and ``TerminalError`` subclasses for failures that no retry can fix. Anything
else is mapped by ``classify_error`` before the worker runtime decides between
acknowledge, requeue and discard.
"""
from typing import Optional

import httpx
from botocore.exceptions import BotoCoreError, ClientError
from confluent_kafka import KafkaException
from pymilvus.exceptions import MilvusException
from sqlalchemy.exc import DBAPIError, OperationalError


class PipelineError(Exception):
    """Base exception for pipeline errors. ``reason`` is the code stored on failed documents."""
    reason: str = "pipeline_error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.reason)
        if reason is not None:
            self.reason = reason


# --- Retryable ---

class TransientError(PipelineError):
    reason = "transient_error"


class TransportError(TransientError):
    reason = "transport_error"


class RpcTimeoutError(TransportError):
    reason = "rpc_timeout"


class BlobStoreError(TransientError):
    reason = "blob_store_unavailable"


class DocumentStoreUnavailableError(TransientError):
    reason = "document_store_unavailable"


class IndexBackendError(TransientError):
    reason = "index_backend_unavailable"


class EmbeddingError(TransientError):
    reason = "embedding_unavailable"


# --- Terminal ---

class TerminalError(PipelineError):
    reason = "terminal_error"


class ExtractError(TerminalError):
    reason = "extraction_failed"


class ExtractMalformedError(ExtractError):
    reason = "malformed_source"


class ExtractEmptyError(ExtractError):
    reason = "empty_source"


class UnsupportedFormatError(ExtractError):
    reason = "unsupported_format"


class SourceMissingError(TerminalError):
    reason = "missing_source"


class InvalidMessageError(TerminalError):
    reason = "invalid_message"


class ContractViolationError(TerminalError):
    reason = "contract_violation"


class IndexRejectedError(TerminalError):
    reason = "index_rejected"


class DuplicateStorageKeyError(TerminalError):
    reason = "duplicate_storage_key"


_PROGRAMMING_ERRORS = (ValueError, TypeError, KeyError, AttributeError, IndexError)


def classify_error(exc: BaseException) -> PipelineError:
    """Maps any exception raised by a handler onto the taxonomy."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, (OperationalError, DBAPIError)):
        return DocumentStoreUnavailableError(str(exc))
    if isinstance(exc, KafkaException):
        return TransportError(str(exc))
    if isinstance(exc, MilvusException):
        return IndexBackendError(str(exc))
    if isinstance(exc, (BotoCoreError, ClientError)):
        return BlobStoreError(str(exc))
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code >= 500 or exc.response.status_code == 429:
            return IndexBackendError(str(exc))
        return IndexRejectedError(str(exc))
    if isinstance(exc, httpx.RequestError):
        return IndexBackendError(str(exc))
    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return TransientError(str(exc), reason="io_error")
    if isinstance(exc, _PROGRAMMING_ERRORS):
        return ContractViolationError(f"{type(exc).__name__}: {exc}")
    return TransientError(f"{type(exc).__name__}: {exc}", reason="unexpected_error")
