# File: content_pipeline/infrastructure/messaging/kafka_transport.py
import functools
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from confluent_kafka import Consumer, Producer, KafkaError, KafkaException, TopicPartition
from pydantic import ValidationError
from tenacity import Retrying, retry_if_exception_type, wait_exponential

from content_pipeline.application.ports.message_transport_port import (
    Delivery, MessageHandler, MessageTransportPort, Outcome, RpcResponder,
)
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import RpcTimeoutError, TransportError
from content_pipeline.core.metrics import MESSAGES_CONSUMED_TOTAL, MESSAGES_PRODUCED_TOTAL, RPC_CALLS_TOTAL
from content_pipeline.domain.messages import JobMessage, RpcRequest, RpcResponse
from content_pipeline.infrastructure.messaging.offset_tracker import OffsetTracker
from content_pipeline.infrastructure.messaging.rpc import (
    CORRELATION_ID_HEADER, REPLY_TO_HEADER, answer_rpc_request,
)

log = structlog.get_logger(__name__)

DEAD_LETTER_SUFFIX = ".dlq"
DISCARDED_FROM_HEADER = "discarded_from"


class _SessionBroken(TransportError):
    """A settled message could not be requeued; the consumer session must restart."""


def _decode_headers(raw_headers) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for name, value in raw_headers or []:
        if value is None:
            continue
        headers[name] = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)
    return headers


class KafkaMessageTransport(MessageTransportPort):
    """
    Kafka implementation of the broker transport.

    Offsets are committed manually and only up to the last contiguous message
    the handler pool has settled, so a crash or rebalance redelivers every
    unsettled message. Kafka has no per-message nack: a requeue re-produces
    the record to its topic and a discard moves it to ``<topic>.dlq``.
    """

    def __init__(
        self,
        bootstrap_servers: Optional[str] = None,
        client_id: Optional[str] = None,
        pool_size: Optional[int] = None,
        dead_letter_enabled: Optional[bool] = None,
        producer: Optional[Any] = None,
        consumer_factory: Optional[Callable[[Dict[str, Any]], Any]] = None,
        flush_timeout: float = 10.0,
    ):
        self.bootstrap_servers = bootstrap_servers or settings.KAFKA_BOOTSTRAP_SERVERS
        self.client_id = client_id or settings.KAFKA_CLIENT_ID or f"content-pipeline-{uuid.uuid4().hex[:12]}"
        self.pool_size = pool_size or settings.WORKER_POOL_SIZE
        self.dead_letter_enabled = (
            settings.KAFKA_DEAD_LETTER_ENABLED if dead_letter_enabled is None else dead_letter_enabled
        )
        self.flush_timeout = flush_timeout
        self._producer = producer or Producer({
            'bootstrap.servers': self.bootstrap_servers,
            'client.id': self.client_id,
            'acks': 'all',
            'enable.idempotence': True,
        })
        self._consumer_factory = consumer_factory or Consumer
        self._stopping = threading.Event()

        self.reply_topic = f"{settings.KAFKA_RPC_REPLY_TOPIC_PREFIX}.{self.client_id}"
        self._pending_replies: Dict[str, Future] = {}
        self._pending_lock = threading.Lock()
        self._reply_thread: Optional[threading.Thread] = None
        self._reply_thread_lock = threading.Lock()
        self._reply_ready = threading.Event()

        self.log = log.bind(component="KafkaMessageTransport", client_id=self.client_id)

    # --- Publish ---

    def publish(self, topic: str, message: Union[JobMessage, bytes], key: Optional[str] = None,
                headers: Optional[Dict[str, str]] = None) -> None:
        if isinstance(message, JobMessage):
            value = message.encode()
            key = key or str(message.document_id)
        else:
            value = message

        delivery_errors: List[Any] = []

        def _delivery_report(err, msg):
            if err is not None:
                delivery_errors.append(err)
                self.log.error(f"Message delivery failed to topic '{topic}'", error=str(err))
            else:
                self.log.debug(f"Message delivered to {msg.topic()} [{msg.partition()}]")

        try:
            self._producer.produce(
                topic,
                key=key.encode('utf-8') if key else None,
                value=value,
                headers=list(headers.items()) if headers else None,
                on_delivery=_delivery_report,
            )
            remaining = self._producer.flush(self.flush_timeout)
        except BufferError as e:
            MESSAGES_PRODUCED_TOTAL.labels(topic=topic, status="failure").inc()
            self.log.error("Kafka producer queue is full", topic=topic, error=str(e))
            raise TransportError(f"Producer queue full for topic {topic}") from e
        except KafkaException as e:
            MESSAGES_PRODUCED_TOTAL.labels(topic=topic, status="failure").inc()
            self.log.exception("Failed to produce message", topic=topic, error=str(e))
            raise TransportError(f"Failed to produce to {topic}: {e}") from e

        if remaining > 0 or delivery_errors:
            MESSAGES_PRODUCED_TOTAL.labels(topic=topic, status="failure").inc()
            raise TransportError(
                f"Message to {topic} not acknowledged by the broker "
                f"(undelivered={remaining}, errors={[str(e) for e in delivery_errors]})"
            )
        MESSAGES_PRODUCED_TOTAL.labels(topic=topic, status="success").inc()

    # --- Consume ---

    def consume(self, topic: str, handler: MessageHandler) -> None:
        consume_log = self.log.bind(topic=topic)
        consume_log.info("Starting Kafka consumer loop...", pool_size=self.pool_size)
        retrying = Retrying(
            retry=retry_if_exception_type((KafkaException, TransportError)),
            wait=wait_exponential(multiplier=1, min=1, max=settings.KAFKA_RECONNECT_BACKOFF_MAX_SECONDS),
            before_sleep=lambda retry_state: consume_log.warning(
                "Kafka consumer session failed, reconnecting with backoff",
                attempt_number=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                self._run_consumer_session(topic, handler)
        consume_log.info("Kafka consumer loop stopped.")

    def _consumer_config(self, group_id: str) -> Dict[str, Any]:
        return {
            'bootstrap.servers': self.bootstrap_servers,
            'group.id': group_id,
            'client.id': self.client_id,
            'auto.offset.reset': settings.KAFKA_AUTO_OFFSET_RESET,
            'enable.auto.commit': False,
        }

    def _run_consumer_session(self, topic: str, handler: MessageHandler) -> None:
        group_id = f"{settings.KAFKA_CONSUMER_GROUP_PREFIX}.{topic}"
        consumer = self._consumer_factory(self._consumer_config(group_id))
        tracker = OffsetTracker()
        slots = threading.BoundedSemaphore(self.pool_size)
        session_broken = threading.Event()

        def on_revoke(c, partitions):
            self._commit(c, tracker)
            tracker.forget((p.topic, p.partition) for p in partitions)

        consumer.subscribe([topic], on_revoke=on_revoke)
        executor = ThreadPoolExecutor(max_workers=self.pool_size, thread_name_prefix=f"handler-{topic}")
        try:
            while not self._stopping.is_set():
                if session_broken.is_set():
                    raise _SessionBroken(f"Could not settle a message on {topic}")
                self._commit(consumer, tracker)

                msg = consumer.poll(timeout=1.0)
                if msg is None:
                    continue
                if msg.error():
                    if msg.error().code() == KafkaError._PARTITION_EOF:
                        continue
                    self.log.error("Kafka consumer error", topic=topic, error=str(msg.error()))
                    raise KafkaException(msg.error())

                while not slots.acquire(timeout=1.0):
                    self._commit(consumer, tracker)
                    if self._stopping.is_set() or session_broken.is_set():
                        break
                else:
                    partition_key = (msg.topic(), msg.partition())
                    tracker.track(partition_key, msg.offset())
                    delivery = Delivery(
                        topic=msg.topic(), value=msg.value(), key=msg.key(), headers=_decode_headers(msg.headers())
                    )
                    future = executor.submit(self._settle, delivery, handler)
                    future.add_done_callback(functools.partial(
                        self._on_settled, tracker, slots, session_broken, partition_key, msg.offset()
                    ))
        finally:
            executor.shutdown(wait=True)
            self._commit(consumer, tracker)
            consumer.close()

    def _on_settled(self, tracker: OffsetTracker, slots: threading.BoundedSemaphore,
                    session_broken: threading.Event, partition_key, offset: int, future: Future) -> None:
        slots.release()
        if future.exception() is not None:
            # Leave the offset uncommitted; the restarted session receives it again
            self.log.error("Message could not be settled", partition=partition_key, offset=offset,
                           error=str(future.exception()))
            session_broken.set()
            return
        tracker.complete(partition_key, offset)

    def _settle(self, delivery: Delivery, handler: MessageHandler) -> Outcome:
        try:
            outcome = handler(delivery)
        except Exception:
            self.log.exception("Handler raised instead of returning an outcome; requeueing", topic=delivery.topic)
            outcome = Outcome.REQUEUE

        key = delivery.key.decode("utf-8", errors="replace") if delivery.key else None
        if outcome == Outcome.REQUEUE:
            self.publish(delivery.topic, delivery.value, key=key, headers=delivery.headers)
        elif outcome == Outcome.DISCARD and self.dead_letter_enabled:
            headers = dict(delivery.headers)
            headers[DISCARDED_FROM_HEADER] = delivery.topic
            self.publish(f"{delivery.topic}{DEAD_LETTER_SUFFIX}", delivery.value, key=key, headers=headers)
        MESSAGES_CONSUMED_TOTAL.labels(topic=delivery.topic, outcome=outcome.value).inc()
        return outcome

    def _commit(self, consumer, tracker: OffsetTracker) -> None:
        committable = tracker.pop_committable()
        if not committable:
            return
        offsets = [TopicPartition(topic, partition, offset) for (topic, partition), offset in committable.items()]
        try:
            consumer.commit(offsets=offsets, asynchronous=False)
        except KafkaException as e:
            # Uncommitted offsets are redelivered; handlers are idempotent
            self.log.warning("Offset commit failed", error=str(e), offsets=len(offsets))

    # --- RPC ---

    def call(self, topic: str, request: RpcRequest, timeout: Optional[float] = None) -> RpcResponse:
        timeout = timeout or settings.RPC_TIMEOUT_SECONDS
        correlation_id = str(request.correlation_id)
        call_log = self.log.bind(topic=topic, method=request.method, correlation_id=correlation_id)
        self._ensure_reply_listener(timeout)

        future: Future = Future()
        with self._pending_lock:
            self._pending_replies[correlation_id] = future
        try:
            self.publish(
                topic,
                request.model_dump_json().encode("utf-8"),
                key=correlation_id,
                headers={CORRELATION_ID_HEADER: correlation_id, REPLY_TO_HEADER: self.reply_topic},
            )
            raw_reply = future.result(timeout=timeout)
        except FutureTimeoutError as e:
            RPC_CALLS_TOTAL.labels(topic=topic, status="timeout").inc()
            call_log.warning("RPC call timed out", timeout=timeout)
            raise RpcTimeoutError(f"No reply to '{request.method}' on {topic} within {timeout}s") from e
        finally:
            with self._pending_lock:
                self._pending_replies.pop(correlation_id, None)

        try:
            response = RpcResponse.model_validate_json(raw_reply)
        except ValidationError as e:
            RPC_CALLS_TOTAL.labels(topic=topic, status="invalid_reply").inc()
            raise TransportError(f"Invalid RPC reply for {correlation_id}", reason="invalid_rpc_reply") from e
        RPC_CALLS_TOTAL.labels(topic=topic, status=response.status).inc()
        return response

    def resolve_reply(self, correlation_id: Optional[str], body: bytes) -> bool:
        """Completes the pending call waiting on ``correlation_id``. Unknown or late replies are dropped."""
        with self._pending_lock:
            future = self._pending_replies.get(correlation_id) if correlation_id else None
        if future is None or future.done():
            self.log.debug("Dropping RPC reply without a pending call", correlation_id=correlation_id)
            return False
        future.set_result(body)
        return True

    def _ensure_reply_listener(self, timeout: float) -> None:
        with self._reply_thread_lock:
            if self._reply_thread is None:
                self._reply_thread = threading.Thread(target=self._reply_loop, name="rpc-reply-listener", daemon=True)
                self._reply_thread.start()
        if not self._reply_ready.wait(timeout):
            raise RpcTimeoutError(f"Reply topic {self.reply_topic} not assigned within {timeout}s")

    def _reply_loop(self) -> None:
        consumer = self._consumer_factory({
            'bootstrap.servers': self.bootstrap_servers,
            'group.id': f"{settings.KAFKA_CONSUMER_GROUP_PREFIX}.rpc-client.{self.client_id}",
            'client.id': self.client_id,
            'auto.offset.reset': 'latest',
            'enable.auto.commit': True,
        })
        consumer.subscribe([self.reply_topic], on_assign=lambda c, partitions: self._reply_ready.set())
        self.log.info("RPC reply listener started.", reply_topic=self.reply_topic)
        try:
            while not self._stopping.is_set():
                msg = consumer.poll(timeout=0.5)
                if msg is None:
                    continue
                if msg.error():
                    if msg.error().code() != KafkaError._PARTITION_EOF:
                        self.log.warning("RPC reply listener error", error=str(msg.error()))
                    continue
                headers = _decode_headers(msg.headers())
                self.resolve_reply(headers.get(CORRELATION_ID_HEADER), msg.value())
        finally:
            consumer.close()

    def serve_rpc(self, topic: str, responder: RpcResponder) -> None:
        def handle(delivery: Delivery) -> Outcome:
            reply = answer_rpc_request(delivery, responder)
            if reply is None:
                return Outcome.DISCARD
            self.publish(reply.reply_to, reply.body, key=reply.correlation_id,
                         headers={CORRELATION_ID_HEADER: reply.correlation_id})
            return Outcome.ACK

        self.consume(topic, handle)

    # --- Lifecycle ---

    def stop(self) -> None:
        self.log.info("Stopping Kafka transport...")
        self._stopping.set()

    def close(self) -> None:
        self.stop()
        self.log.info(f"Flushing producer with a timeout of {self.flush_timeout}s...")
        self._producer.flush(self.flush_timeout)
        if self._reply_thread is not None:
            self._reply_thread.join(timeout=5.0)
        self.log.info("Kafka transport closed.")
