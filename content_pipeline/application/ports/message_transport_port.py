from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Union

from content_pipeline.domain.messages import JobMessage, RpcRequest, RpcResponse


class Outcome(str, Enum):
    """How a consumed message is settled with the broker."""
    ACK = "ack"
    REQUEUE = "nack_requeue"
    DISCARD = "nack_discard"


@dataclass
class Delivery:
    topic: str
    value: bytes
    key: Optional[bytes] = None
    headers: Dict[str, str] = field(default_factory=dict)


MessageHandler = Callable[[Delivery], Outcome]
RpcResponder = Callable[[RpcRequest], RpcResponse]


class MessageTransportPort(ABC):
    """
    Interface (Port) over a broker connection: job queues plus request/response.

    Delivery is at-least-once. Handlers must be idempotent because any message
    that was not settled before a crash or reconnect is delivered again.
    """

    @abstractmethod
    def publish(self, topic: str, message: Union[JobMessage, bytes], key: Optional[str] = None,
                headers: Optional[Dict[str, str]] = None) -> None:
        """Fire-and-forget publish. Raises TransportError."""
        pass

    @abstractmethod
    def consume(self, topic: str, handler: MessageHandler) -> None:
        """Blocks, dispatching each delivery to ``handler`` until ``stop()`` is called."""
        pass

    @abstractmethod
    def call(self, topic: str, request: RpcRequest, timeout: float) -> RpcResponse:
        """Request/response over the broker. Raises RpcTimeoutError when no reply arrives in time."""
        pass

    @abstractmethod
    def serve_rpc(self, topic: str, responder: RpcResponder) -> None:
        """Blocks, answering RPC requests on ``topic`` until ``stop()`` is called."""
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass
