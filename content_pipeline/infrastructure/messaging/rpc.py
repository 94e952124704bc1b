from dataclasses import dataclass
from typing import Optional

import structlog
from pydantic import ValidationError

from content_pipeline.application.ports.message_transport_port import Delivery, RpcResponder
from content_pipeline.domain.messages import RpcErrorCode, RpcRequest, RpcResponse

log = structlog.get_logger(__name__)

CORRELATION_ID_HEADER = "correlation_id"
REPLY_TO_HEADER = "reply_to"


@dataclass
class RpcReply:
    reply_to: str
    correlation_id: str
    body: bytes


def answer_rpc_request(delivery: Delivery, responder: RpcResponder) -> Optional[RpcReply]:
    """
    Runs ``responder`` for one RPC delivery and builds the reply to publish.

    Returns None when the request carries no reply address; such a request can
    never be answered and is discarded by the caller.
    """
    reply_to = delivery.headers.get(REPLY_TO_HEADER)
    correlation_id = delivery.headers.get(CORRELATION_ID_HEADER)
    if not reply_to or not correlation_id:
        log.warning("RPC request without reply address", topic=delivery.topic, headers=delivery.headers)
        return None

    try:
        request = RpcRequest.model_validate_json(delivery.value)
    except ValidationError as e:
        response = RpcResponse.fail(RpcErrorCode.BAD_REQUEST, f"Invalid RPC request: {e.error_count()} error(s)")
    else:
        try:
            response = responder(request)
        except Exception as e:
            log.exception("RPC responder failed", method=request.method, correlation_id=correlation_id)
            response = RpcResponse.fail(RpcErrorCode.INTERNAL_SERVER_ERROR, f"{type(e).__name__}: {e}")

    response = response.model_copy(update={"correlation_id": correlation_id})
    return RpcReply(reply_to=reply_to, correlation_id=correlation_id, body=response.model_dump_json().encode("utf-8"))
