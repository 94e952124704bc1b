import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, FrozenSet, Optional

import structlog

from content_pipeline.application.ports.message_transport_port import Delivery, MessageTransportPort, Outcome
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import (
    InvalidMessageError, PipelineError, TerminalError, TransportError, classify_error,
)
from content_pipeline.core.metrics import HANDLER_DURATION_SECONDS, HANDLER_ERRORS_TOTAL, JOB_RETRIES_TOTAL
from content_pipeline.domain.messages import JobKind, JobMessage, decode_job_message, peek_document_id

log = structlog.get_logger(__name__)


class StageHandler(ABC):
    """One pipeline stage as seen by the worker runtime."""

    stage_name: str
    accepted_kinds: FrozenSet[JobKind]

    @abstractmethod
    def handle(self, message: JobMessage) -> None:
        """Processes one job. Must be idempotent; raises TransientError or TerminalError."""
        pass

    @abstractmethod
    def give_up(self, document_id: uuid.UUID, message: Optional[JobMessage], reason: str) -> None:
        """Records that the job for ``document_id`` will not be retried any more."""
        pass


class WorkerRuntime:
    """
    Generic consumer loop: decode, dispatch, settle.

    Every delivery ends in exactly one outcome. Retryable failures are
    republished to the same topic with ``attempt_count + 1`` until
    ``max_retries`` republishes have happened; then, or immediately for
    terminal failures, the handler's give-up hook records the failure and the
    message is discarded. If recording the failure itself fails the message is
    requeued so the failure is never lost.
    """

    def __init__(
        self,
        transport: MessageTransportPort,
        topic: str,
        handler: StageHandler,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.transport = transport
        self.topic = topic
        self.handler = handler
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = settings.RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.backoff_max_seconds = (
            settings.RETRY_BACKOFF_MAX_SECONDS if backoff_max_seconds is None else backoff_max_seconds
        )
        self._sleep = sleep
        self.log = log.bind(component="WorkerRuntime", stage=handler.stage_name, topic=topic)

    def run(self) -> None:
        self.log.info("Worker runtime starting", max_retries=self.max_retries)
        self.transport.consume(self.topic, self.process)

    def process(self, delivery: Delivery) -> Outcome:
        try:
            message = decode_job_message(delivery.value)
        except InvalidMessageError as e:
            return self._reject_undecodable(delivery, e)

        msg_log = self.log.bind(
            document_id=str(message.document_id),
            kind=message.kind.value,
            attempt_count=message.attempt_count,
            correlation_id=str(message.correlation_id) if message.correlation_id else None,
        )

        if message.kind not in self.handler.accepted_kinds:
            msg_log.error("Message kind not handled by this stage")
            HANDLER_ERRORS_TOTAL.labels(stage=self.handler.stage_name, kind="terminal").inc()
            return self._give_up(message.document_id, message, "unexpected_kind", msg_log)

        msg_log.info("Handling message")
        try:
            with HANDLER_DURATION_SECONDS.labels(stage=self.handler.stage_name).time():
                self.handler.handle(message)
        except Exception as e:
            error = classify_error(e)
            if isinstance(error, TerminalError):
                msg_log.error("Terminal error in handler", reason=error.reason, error=str(e),
                              exc_info=not isinstance(e, PipelineError))
                HANDLER_ERRORS_TOTAL.labels(stage=self.handler.stage_name, kind="terminal").inc()
                return self._give_up(message.document_id, message, error.reason, msg_log)
            msg_log.warning("Retryable error in handler", reason=error.reason, error=str(e),
                            exc_info=not isinstance(e, PipelineError))
            HANDLER_ERRORS_TOTAL.labels(stage=self.handler.stage_name, kind="transient").inc()
            return self._retry(message, error, msg_log)

        msg_log.info("Message handled")
        return Outcome.ACK

    def backoff_for(self, attempt_count: int) -> float:
        return min(self.backoff_seconds * (2 ** attempt_count), self.backoff_max_seconds)

    def _retry(self, message: JobMessage, error: PipelineError, msg_log) -> Outcome:
        if message.attempt_count >= self.max_retries:
            msg_log.error("Retries exhausted", max_retries=self.max_retries)
            return self._give_up(message.document_id, message, f"retries_exhausted:{error.reason}", msg_log)

        delay = self.backoff_for(message.attempt_count)
        if delay > 0:
            self._sleep(delay)
        retried = message.next_attempt()
        try:
            self.transport.publish(self.topic, retried)
        except TransportError as e:
            # Same attempt comes back through the broker
            msg_log.warning("Could not republish retry, requeueing original", error=str(e))
            return Outcome.REQUEUE
        JOB_RETRIES_TOTAL.labels(stage=self.handler.stage_name).inc()
        msg_log.info("Job republished for another attempt", next_attempt=retried.attempt_count, backoff_s=delay)
        return Outcome.ACK

    def _give_up(self, document_id: uuid.UUID, message: Optional[JobMessage], reason: str, msg_log) -> Outcome:
        try:
            self.handler.give_up(document_id, message, reason)
        except Exception as e:
            msg_log.error("Could not record failure, requeueing", reason=reason, error=str(e), exc_info=True)
            return Outcome.REQUEUE
        return Outcome.DISCARD

    def _reject_undecodable(self, delivery: Delivery, error: InvalidMessageError) -> Outcome:
        HANDLER_ERRORS_TOTAL.labels(stage=self.handler.stage_name, kind="terminal").inc()
        document_id = peek_document_id(delivery.value)
        msg_log = self.log.bind(document_id=str(document_id) if document_id else None)
        msg_log.error("Discarding undecodable message", error=str(error), raw_value=delivery.value[:512])
        if document_id is None:
            return Outcome.DISCARD
        return self._give_up(document_id, None, error.reason, msg_log)
