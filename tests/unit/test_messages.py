"""Unit tests for the broker wire contract: job envelopes and RPC messages."""

from __future__ import annotations

import json
import uuid

import pytest

from content_pipeline.core.exceptions import InvalidMessageError
from content_pipeline.domain.messages import (
    CleanupRequestedPayload,
    ExtractRequestedPayload,
    IndexCompletedPayload,
    IndexRequestedPayload,
    JobKind,
    JobMessage,
    RpcErrorCode,
    RpcResponse,
    decode_job_message,
    peek_document_id,
)
from content_pipeline.domain.models import DocumentFormat, IndexStage


class TestJobMessage:
    def test_build_starts_at_attempt_zero(self) -> None:
        document_id = uuid.uuid4()
        message = JobMessage.build(
            JobKind.EXTRACT_REQUESTED,
            document_id,
            ExtractRequestedPayload(storage_key="k/1.epub", format=DocumentFormat.EPUB, original_name="1.epub"),
        )

        assert message.attempt_count == 0
        assert message.document_id == document_id
        assert message.payload == {"storage_key": "k/1.epub", "format": "epub", "original_name": "1.epub"}

    def test_build_rejects_payload_of_another_kind(self) -> None:
        with pytest.raises(TypeError):
            JobMessage.build(JobKind.INDEX_COMPLETED, uuid.uuid4(), CleanupRequestedPayload())

    def test_next_attempt_keeps_everything_else(self) -> None:
        correlation_id = uuid.uuid4()
        message = JobMessage.build(
            JobKind.INDEX_FULLTEXT_REQUESTED,
            uuid.uuid4(),
            IndexRequestedPayload(stage=IndexStage.FULLTEXT, chunk_count=3),
            correlation_id=correlation_id,
        )

        retried = message.next_attempt().next_attempt()

        assert retried.attempt_count == 2
        assert retried.correlation_id == correlation_id
        assert retried.payload == message.payload
        assert message.attempt_count == 0

    def test_encode_decode_preserves_payload(self) -> None:
        message = JobMessage.build(
            JobKind.INDEX_COMPLETED,
            uuid.uuid4(),
            IndexCompletedPayload(stage=IndexStage.EMBEDDING, indexed_chunks=12),
            correlation_id=uuid.uuid4(),
        )

        decoded = decode_job_message(message.encode())

        assert decoded == message
        payload = decoded.parsed_payload()
        assert isinstance(payload, IndexCompletedPayload)
        assert payload.stage == IndexStage.EMBEDDING


class TestDecodeErrors:
    def test_not_json(self) -> None:
        with pytest.raises(InvalidMessageError):
            decode_job_message(b"not json at all")

    def test_unknown_kind(self) -> None:
        raw = json.dumps({
            "kind": "SomethingElse", "document_id": str(uuid.uuid4()), "attempt_count": 0, "payload": {},
        }).encode()
        with pytest.raises(InvalidMessageError) as exc_info:
            decode_job_message(raw)
        assert exc_info.value.reason == "invalid_message"

    def test_payload_not_matching_kind(self) -> None:
        raw = json.dumps({
            "kind": "ExtractRequested", "document_id": str(uuid.uuid4()), "attempt_count": 0,
            "payload": {"stage": "fulltext"},
        }).encode()
        with pytest.raises(InvalidMessageError):
            decode_job_message(raw)

    def test_negative_attempt_count(self) -> None:
        raw = json.dumps({
            "kind": "CleanupRequested", "document_id": str(uuid.uuid4()), "attempt_count": -1, "payload": {},
        }).encode()
        with pytest.raises(InvalidMessageError):
            decode_job_message(raw)


class TestPeekDocumentId:
    def test_recovers_id_from_invalid_envelope(self) -> None:
        document_id = uuid.uuid4()
        raw = json.dumps({"kind": "Bogus", "document_id": str(document_id)}).encode()
        assert peek_document_id(raw) == document_id

    def test_returns_none_when_unrecoverable(self) -> None:
        assert peek_document_id(b"\xff\xfe garbage") is None
        assert peek_document_id(b'{"document_id": "not-a-uuid"}') is None
        assert peek_document_id(b"[1, 2, 3]") is None


class TestRpcResponse:
    def test_ok_and_fail_constructors(self) -> None:
        ok = RpcResponse.ok({"state": "Indexed"}, correlation_id="abc")
        failed = RpcResponse.fail(RpcErrorCode.NOT_FOUND, "missing")

        assert ok.is_ok and ok.data == {"state": "Indexed"} and ok.error is None
        assert not failed.is_ok
        assert failed.error.code == RpcErrorCode.NOT_FOUND

    def test_error_code_serializes_as_string(self) -> None:
        body = json.loads(RpcResponse.fail(RpcErrorCode.BAD_REQUEST, "bad").model_dump_json())
        assert body["status"] == "error"
        assert body["error"]["code"] == "bad_request"
