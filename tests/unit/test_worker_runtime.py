"""Unit tests for WorkerRuntime: decode, dispatch, retry and settle."""

from __future__ import annotations

import json
import uuid
from typing import List, Optional, Tuple

import pytest

from content_pipeline.application.ports.message_transport_port import Delivery, Outcome
from content_pipeline.core.exceptions import ExtractMalformedError, IndexBackendError
from content_pipeline.domain.messages import CleanupRequestedPayload, JobKind, JobMessage
from content_pipeline.workers.runtime import StageHandler, WorkerRuntime
from doubles import InMemoryTransport

TOPIC = "t.jobs"


class RecordingHandler(StageHandler):
    """Raises the queued errors in order, then succeeds."""

    stage_name = "test"
    accepted_kinds = frozenset({JobKind.CLEANUP_REQUESTED})

    def __init__(self, errors: Optional[List[BaseException]] = None, always: Optional[BaseException] = None,
                 give_up_error: Optional[BaseException] = None) -> None:
        self.errors = list(errors or [])
        self.always = always
        self.give_up_error = give_up_error
        self.handled: List[JobMessage] = []
        self.given_up: List[Tuple[uuid.UUID, Optional[JobMessage], str]] = []

    def handle(self, message: JobMessage) -> None:
        self.handled.append(message)
        if self.always is not None:
            raise self.always
        if self.errors:
            raise self.errors.pop(0)

    def give_up(self, document_id: uuid.UUID, message: Optional[JobMessage], reason: str) -> None:
        if self.give_up_error is not None:
            raise self.give_up_error
        self.given_up.append((document_id, message, reason))


def _runtime(transport: InMemoryTransport, handler: StageHandler, max_retries: int = 3) -> WorkerRuntime:
    return WorkerRuntime(transport, TOPIC, handler, max_retries=max_retries, backoff_seconds=0,
                         backoff_max_seconds=0, sleep=lambda seconds: None)


def _enqueue(transport: InMemoryTransport, kind: JobKind = JobKind.CLEANUP_REQUESTED) -> JobMessage:
    message = JobMessage.build(JobKind.CLEANUP_REQUESTED, uuid.uuid4(), CleanupRequestedPayload(storage_key="k"))
    if kind != JobKind.CLEANUP_REQUESTED:
        message = message.model_copy(update={"kind": kind, "payload": {"stage": "fulltext", "chunk_count": 1}})
    transport.publish(TOPIC, message)
    return message


@pytest.fixture
def jobs() -> InMemoryTransport:
    return InMemoryTransport()


class TestSuccess:
    def test_handled_message_is_acked(self, jobs: InMemoryTransport) -> None:
        handler = RecordingHandler()
        message = _enqueue(jobs)

        outcomes = jobs.drain(TOPIC, _runtime(jobs, handler).process)

        assert outcomes == [Outcome.ACK]
        assert handler.handled == [message]
        assert handler.given_up == []


class TestTransientRetries:
    def test_retry_republishes_with_next_attempt(self, jobs: InMemoryTransport) -> None:
        handler = RecordingHandler(errors=[IndexBackendError("down")])
        _enqueue(jobs)

        outcomes = jobs.drain(TOPIC, _runtime(jobs, handler).process)

        assert outcomes == [Outcome.ACK, Outcome.ACK]
        assert [m.attempt_count for m in handler.handled] == [0, 1]
        assert handler.given_up == []

    @pytest.mark.parametrize("max_retries", [0, 1, 3])
    def test_always_transient_is_retried_exactly_max_times(self, jobs: InMemoryTransport, max_retries: int) -> None:
        handler = RecordingHandler(always=IndexBackendError("down"))
        message = _enqueue(jobs)

        outcomes = jobs.drain(TOPIC, _runtime(jobs, handler, max_retries=max_retries).process)

        assert len(handler.handled) == max_retries + 1
        assert outcomes == [Outcome.ACK] * max_retries + [Outcome.DISCARD]
        assert handler.given_up == [
            (message.document_id, handler.handled[-1], "retries_exhausted:index_backend_unavailable"),
        ]

    def test_failed_republish_requeues_original(self, jobs: InMemoryTransport) -> None:
        handler = RecordingHandler(errors=[IndexBackendError("down")])
        _enqueue(jobs)
        jobs.failing_topics.add(TOPIC)

        outcome = _runtime(jobs, handler).process(jobs.queues[TOPIC][0])

        assert outcome == Outcome.REQUEUE

    def test_backoff_grows_and_is_capped(self, jobs: InMemoryTransport) -> None:
        runtime = WorkerRuntime(jobs, TOPIC, RecordingHandler(), max_retries=5, backoff_seconds=1.0,
                                backoff_max_seconds=5.0)

        assert [runtime.backoff_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_unknown_exception_is_treated_as_transient(self, jobs: InMemoryTransport) -> None:
        handler = RecordingHandler(errors=[RuntimeError("surprise")])
        _enqueue(jobs)

        outcomes = jobs.drain(TOPIC, _runtime(jobs, handler).process)

        assert outcomes == [Outcome.ACK, Outcome.ACK]
        assert len(handler.handled) == 2


class TestTerminalFailures:
    def test_terminal_error_gives_up_without_retry(self, jobs: InMemoryTransport) -> None:
        handler = RecordingHandler(always=ExtractMalformedError("bad zip"))
        message = _enqueue(jobs)

        outcomes = jobs.drain(TOPIC, _runtime(jobs, handler).process)

        assert outcomes == [Outcome.DISCARD]
        assert len(handler.handled) == 1
        assert handler.given_up == [(message.document_id, message, "malformed_source")]
        assert len(jobs.dead_letters) == 1

    def test_programming_error_is_contract_violation(self, jobs: InMemoryTransport) -> None:
        handler = RecordingHandler(always=KeyError("missing"))
        _enqueue(jobs)

        jobs.drain(TOPIC, _runtime(jobs, handler).process)

        assert len(handler.handled) == 1
        assert handler.given_up[0][2] == "contract_violation"

    def test_unexpected_kind_is_discarded(self, jobs: InMemoryTransport) -> None:
        handler = RecordingHandler()
        message = _enqueue(jobs, kind=JobKind.INDEX_FULLTEXT_REQUESTED)

        outcomes = jobs.drain(TOPIC, _runtime(jobs, handler).process)

        assert outcomes == [Outcome.DISCARD]
        assert handler.handled == []
        assert handler.given_up[0][0] == message.document_id
        assert handler.given_up[0][2] == "unexpected_kind"

    def test_failing_give_up_requeues(self, jobs: InMemoryTransport) -> None:
        handler = RecordingHandler(always=ExtractMalformedError("bad"), give_up_error=IndexBackendError("db down"))
        _enqueue(jobs)

        outcome = _runtime(jobs, handler).process(jobs.queues[TOPIC][0])

        assert outcome == Outcome.REQUEUE


class TestUndecodableMessages:
    def test_garbage_is_discarded_without_give_up(self, jobs: InMemoryTransport) -> None:
        handler = RecordingHandler()

        outcome = _runtime(jobs, handler).process(Delivery(topic=TOPIC, value=b"\x00garbage"))

        assert outcome == Outcome.DISCARD
        assert handler.given_up == []

    def test_invalid_envelope_with_document_id_gives_up(self, jobs: InMemoryTransport) -> None:
        handler = RecordingHandler()
        document_id = uuid.uuid4()
        raw = json.dumps({"kind": "CleanupRequested", "document_id": str(document_id)}).encode()

        outcome = _runtime(jobs, handler).process(Delivery(topic=TOPIC, value=raw))

        assert outcome == Outcome.DISCARD
        assert handler.given_up == [(document_id, None, "invalid_message")]
