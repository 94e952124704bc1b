"""Unit tests for the Kafka transport with mocked confluent-kafka clients."""

from __future__ import annotations

import uuid
from typing import Dict, List
from unittest.mock import MagicMock

import pytest
from confluent_kafka import KafkaException

from content_pipeline.application.ports.message_transport_port import Delivery, Outcome
from content_pipeline.core.exceptions import RpcTimeoutError, TransportError
from content_pipeline.domain.messages import CleanupRequestedPayload, JobKind, JobMessage, RpcRequest, RpcResponse
from content_pipeline.infrastructure.messaging.kafka_transport import (
    DISCARDED_FROM_HEADER,
    KafkaMessageTransport,
)
from content_pipeline.infrastructure.messaging.offset_tracker import OffsetTracker
from content_pipeline.infrastructure.messaging.rpc import CORRELATION_ID_HEADER, answer_rpc_request


def _acking_producer() -> MagicMock:
    producer = MagicMock()

    def produce(topic, key=None, value=None, headers=None, on_delivery=None):
        on_delivery(None, MagicMock())

    producer.produce.side_effect = produce
    producer.flush.return_value = 0
    return producer


def _transport(producer=None, consumer_factory=None, **kwargs) -> KafkaMessageTransport:
    return KafkaMessageTransport(
        bootstrap_servers="localhost:9092",
        client_id="test-client",
        pool_size=2,
        dead_letter_enabled=True,
        producer=producer or _acking_producer(),
        consumer_factory=consumer_factory,
        flush_timeout=0.1,
        **kwargs,
    )


def _produced(producer: MagicMock) -> List[Dict]:
    return [c.kwargs | {"topic": c.args[0]} for c in producer.produce.call_args_list]


def _kafka_message(topic: str, partition: int, offset: int, value: bytes) -> MagicMock:
    msg = MagicMock()
    msg.error.return_value = None
    msg.topic.return_value = topic
    msg.partition.return_value = partition
    msg.offset.return_value = offset
    msg.value.return_value = value
    msg.key.return_value = b"k"
    msg.headers.return_value = [("trace", b"abc")]
    return msg


class FakeConsumer:
    """Hands out a fixed list of records, then asks the transport to stop."""

    def __init__(self, transport_ref: List[KafkaMessageTransport], records: List[MagicMock]) -> None:
        self.transport_ref = transport_ref
        self.records = list(records)
        self.commits: List = []
        self.closed = False

    def subscribe(self, topics, on_revoke=None, on_assign=None) -> None:
        self.topics = topics

    def poll(self, timeout: float):
        if self.records:
            return self.records.pop(0)
        self.transport_ref[0].stop()
        return None

    def commit(self, offsets, asynchronous: bool = False) -> None:
        self.commits.extend(offsets)

    def close(self) -> None:
        self.closed = True


class TestOffsetTracker:
    def test_commits_only_contiguous_prefix(self) -> None:
        tracker = OffsetTracker()
        key = ("jobs", 0)
        for offset in (10, 11, 12):
            tracker.track(key, offset)

        tracker.complete(key, 11)
        assert tracker.pop_committable() == {}

        tracker.complete(key, 10)
        assert tracker.pop_committable() == {key: 12}
        assert tracker.pending_count() == 1

        tracker.complete(key, 12)
        assert tracker.pop_committable() == {key: 13}
        assert tracker.pop_committable() == {}

    def test_partitions_are_independent(self) -> None:
        tracker = OffsetTracker()
        tracker.track(("jobs", 0), 5)
        tracker.track(("jobs", 1), 7)
        tracker.complete(("jobs", 1), 7)

        assert tracker.pop_committable() == {("jobs", 1): 8}

    def test_forget_drops_revoked_partitions(self) -> None:
        tracker = OffsetTracker()
        tracker.track(("jobs", 0), 1)
        tracker.forget([("jobs", 0)])
        tracker.complete(("jobs", 0), 1)

        assert tracker.pop_committable() == {}
        assert tracker.pending_count() == 0


class TestPublish:
    def test_job_message_keyed_by_document(self) -> None:
        producer = _acking_producer()
        message = JobMessage.build(JobKind.CLEANUP_REQUESTED, uuid.uuid4(), CleanupRequestedPayload())

        _transport(producer).publish("jobs", message)

        [produced] = _produced(producer)
        assert produced["topic"] == "jobs"
        assert produced["key"] == str(message.document_id).encode()
        assert produced["value"] == message.encode()

    def test_full_queue_raises_transport_error(self) -> None:
        producer = MagicMock()
        producer.produce.side_effect = BufferError("queue full")

        with pytest.raises(TransportError):
            _transport(producer).publish("jobs", b"raw")

    def test_kafka_exception_raises_transport_error(self) -> None:
        producer = MagicMock()
        producer.produce.side_effect = KafkaException("broker down")

        with pytest.raises(TransportError):
            _transport(producer).publish("jobs", b"raw")

    def test_delivery_failure_raises_transport_error(self) -> None:
        producer = MagicMock()
        producer.produce.side_effect = lambda topic, **kw: kw["on_delivery"]("msg timed out", None)
        producer.flush.return_value = 0

        with pytest.raises(TransportError):
            _transport(producer).publish("jobs", b"raw")

    def test_unflushed_message_raises_transport_error(self) -> None:
        producer = MagicMock()
        producer.flush.return_value = 1

        with pytest.raises(TransportError):
            _transport(producer).publish("jobs", b"raw")


class TestSettle:
    def test_ack_produces_nothing(self) -> None:
        producer = _acking_producer()

        outcome = _transport(producer)._settle(Delivery(topic="jobs", value=b"v"), lambda d: Outcome.ACK)

        assert outcome == Outcome.ACK
        producer.produce.assert_not_called()

    def test_requeue_reproduces_to_same_topic(self) -> None:
        producer = _acking_producer()
        delivery = Delivery(topic="jobs", value=b"v", key=b"doc-1", headers={"trace": "abc"})

        _transport(producer)._settle(delivery, lambda d: Outcome.REQUEUE)

        [produced] = _produced(producer)
        assert produced["topic"] == "jobs"
        assert produced["key"] == b"doc-1"
        assert produced["value"] == b"v"

    def test_discard_goes_to_dead_letter_topic(self) -> None:
        producer = _acking_producer()

        _transport(producer)._settle(Delivery(topic="jobs", value=b"v"), lambda d: Outcome.DISCARD)

        [produced] = _produced(producer)
        assert produced["topic"] == "jobs.dlq"
        assert (DISCARDED_FROM_HEADER, "jobs") in produced["headers"]

    def test_discard_without_dead_letter_produces_nothing(self) -> None:
        producer = _acking_producer()
        transport = KafkaMessageTransport(
            bootstrap_servers="localhost:9092", client_id="c", pool_size=1, dead_letter_enabled=False,
            producer=producer,
        )

        transport._settle(Delivery(topic="jobs", value=b"v"), lambda d: Outcome.DISCARD)

        producer.produce.assert_not_called()

    def test_raising_handler_is_requeued(self) -> None:
        producer = _acking_producer()

        def explode(delivery: Delivery) -> Outcome:
            raise RuntimeError("bug")

        assert _transport(producer)._settle(Delivery(topic="jobs", value=b"v"), explode) == Outcome.REQUEUE
        assert _produced(producer)[0]["topic"] == "jobs"


class TestConsume:
    def test_handles_every_record_and_commits_past_the_last(self) -> None:
        ref: List[KafkaMessageTransport] = []
        records = [_kafka_message("jobs", 0, offset, f"m{offset}".encode()) for offset in range(3)]
        consumer = FakeConsumer(ref, records)
        transport = _transport(consumer_factory=lambda config: consumer)
        ref.append(transport)
        seen: List[Delivery] = []

        def handler(delivery: Delivery) -> Outcome:
            seen.append(delivery)
            return Outcome.ACK

        transport.consume("jobs", handler)

        assert sorted(d.value for d in seen) == [b"m0", b"m1", b"m2"]
        assert seen[0].headers == {"trace": "abc"}
        assert max(tp.offset for tp in consumer.commits if tp.partition == 0) == 3
        assert consumer.closed


class TestRpc:
    def test_call_returns_reply_for_correlation_id(self, monkeypatch) -> None:
        ref: List[KafkaMessageTransport] = []

        def responder(request: RpcRequest) -> RpcResponse:
            return RpcResponse.ok({"echo": request.params["value"]})

        def produce(topic, key=None, value=None, headers=None, on_delivery=None):
            on_delivery(None, MagicMock())
            reply = answer_rpc_request(Delivery(topic=topic, value=value, headers=dict(headers)), responder)
            ref[0].resolve_reply(reply.correlation_id, reply.body)

        producer = _acking_producer()
        producer.produce.side_effect = produce
        transport = _transport(producer)
        ref.append(transport)
        monkeypatch.setattr(transport, "_ensure_reply_listener", lambda timeout: None)

        request = RpcRequest(method="echo", params={"value": 42})
        response = transport.call("rpc", request, timeout=1.0)

        assert response.is_ok
        assert response.data == {"echo": 42}
        assert response.correlation_id == str(request.correlation_id)

    def test_call_times_out_without_reply(self, monkeypatch) -> None:
        transport = _transport()
        monkeypatch.setattr(transport, "_ensure_reply_listener", lambda timeout: None)

        with pytest.raises(RpcTimeoutError):
            transport.call("rpc", RpcRequest(method="health"), timeout=0.05)

        assert transport._pending_replies == {}

    def test_unknown_reply_is_dropped(self) -> None:
        transport = _transport()

        assert not transport.resolve_reply("no-such-call", b"{}")
        assert not transport.resolve_reply(None, b"{}")

    def test_request_without_reply_address_gets_no_reply(self) -> None:
        delivery = Delivery(topic="rpc", value=RpcRequest(method="health").model_dump_json().encode(),
                            headers={CORRELATION_ID_HEADER: "abc"})

        assert answer_rpc_request(delivery, lambda r: RpcResponse.ok({})) is None
