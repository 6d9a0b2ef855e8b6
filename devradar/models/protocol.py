"""
devradar/models/protocol.py
Realtime wire protocol: the envelope, the closed set of inbound messages and
the outbound payloads.

Every frame is ``{type, payload, timestamp, correlationId?}`` in camelCase.
Inbound frames are validated in two steps: the envelope first (a bad envelope
is ``INVALID_MESSAGE``), then the payload against the message type's schema
(``UNKNOWN_TYPE`` / ``INVALID_PAYLOAD``).
"""

import json
from typing import Any, Annotated, Dict, Literal, Optional, Union

from pydantic import Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from devradar.core.clock import epoch_ms
from devradar.models.presence import ActivityPayload, CamelModel, UserStatus


class MessageType:
    HEARTBEAT = "HEARTBEAT"
    STATUS_UPDATE = "STATUS_UPDATE"
    POKE = "POKE"
    SUBSCRIBE = "SUBSCRIBE"
    UNSUBSCRIBE = "UNSUBSCRIBE"

    CONNECTED = "CONNECTED"
    FRIEND_STATUS = "FRIEND_STATUS"
    PONG = "PONG"
    ERROR = "ERROR"
    ACHIEVEMENT = "ACHIEVEMENT"


INBOUND_TYPES = frozenset({
    MessageType.HEARTBEAT,
    MessageType.STATUS_UPDATE,
    MessageType.POKE,
    MessageType.SUBSCRIBE,
    MessageType.UNSUBSCRIBE,
})


class ErrorCode:
    INVALID_MESSAGE = "INVALID_MESSAGE"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    UNKNOWN_TYPE = "UNKNOWN_TYPE"
    NOT_FRIEND = "NOT_FRIEND"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ProtocolError(Exception):
    """An inbound frame was rejected. Answered with ERROR; the connection stays open."""

    def __init__(self, code: str, message: str, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.correlation_id = correlation_id


class Envelope(CamelModel):
    type: str = Field(min_length=1, max_length=64)
    payload: Any = None
    timestamp: int = Field(gt=0)
    correlation_id: Optional[str] = Field(default=None, max_length=128)


# Inbound payloads

class HeartbeatPayload(CamelModel):
    ping: Optional[bool] = None


class StatusUpdatePayload(CamelModel):
    status: UserStatus
    activity: Optional[ActivityPayload] = None


class PokePayload(CamelModel):
    to_user_id: str = Field(min_length=1, max_length=100)
    message: Optional[str] = Field(default=None, max_length=280)


class HeartbeatMessage(CamelModel):
    type: Literal["HEARTBEAT"]
    payload: HeartbeatPayload = Field(default_factory=HeartbeatPayload)
    correlation_id: Optional[str] = None


class StatusUpdateMessage(CamelModel):
    type: Literal["STATUS_UPDATE"]
    payload: StatusUpdatePayload
    correlation_id: Optional[str] = None


class PokeMessage(CamelModel):
    type: Literal["POKE"]
    payload: PokePayload
    correlation_id: Optional[str] = None


class SubscriptionMessage(CamelModel):
    type: Literal["SUBSCRIBE", "UNSUBSCRIBE"]
    payload: Any = None
    correlation_id: Optional[str] = None


InboundMessage = Annotated[
    Union[HeartbeatMessage, StatusUpdateMessage, PokeMessage, SubscriptionMessage],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter = TypeAdapter(InboundMessage)


def extract_correlation_id(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        value = data.get("correlationId")
        if isinstance(value, str) and 0 < len(value) <= 128:
            return value
    return None


def parse_inbound(raw: str) -> Union[HeartbeatMessage, StatusUpdateMessage, PokeMessage, SubscriptionMessage]:
    """Decode and validate one text frame. Raises ProtocolError on rejection."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise ProtocolError(ErrorCode.INVALID_MESSAGE, "Message is not valid JSON")

    correlation_id = extract_correlation_id(data)
    if not isinstance(data, dict):
        raise ProtocolError(ErrorCode.INVALID_MESSAGE, "Message must be a JSON object", correlation_id)

    try:
        envelope = Envelope.model_validate(data)
    except PydanticValidationError:
        raise ProtocolError(ErrorCode.INVALID_MESSAGE, "Invalid message format", correlation_id)

    if envelope.type not in INBOUND_TYPES:
        raise ProtocolError(ErrorCode.UNKNOWN_TYPE, f"Unknown message type: {envelope.type}", correlation_id)

    candidate = {"type": envelope.type, "correlationId": envelope.correlation_id}
    if envelope.payload is not None:
        candidate["payload"] = envelope.payload
    try:
        return _inbound_adapter.validate_python(candidate)
    except PydanticValidationError:
        raise ProtocolError(
            ErrorCode.INVALID_PAYLOAD,
            f"Invalid {envelope.type.lower()} payload",
            correlation_id,
        )


# Outbound payloads

class ConnectedPayload(CamelModel):
    user_id: str
    friend_count: int


class PokeDelivery(CamelModel):
    from_user_id: str
    to_user_id: str
    message: Optional[str] = None


class PongPayload(CamelModel):
    timestamp: int


class ErrorPayload(CamelModel):
    code: str
    message: str


def envelope(
    message_type: str,
    payload: Union[CamelModel, Dict[str, Any]],
    *,
    correlation_id: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> Dict[str, Any]:
    body = payload.to_wire() if isinstance(payload, CamelModel) else payload
    message: Dict[str, Any] = {
        "type": message_type,
        "payload": body,
        "timestamp": timestamp if timestamp is not None else epoch_ms(),
    }
    if correlation_id:
        message["correlationId"] = correlation_id
    return message


def error_envelope(code: str, message: str, correlation_id: Optional[str] = None) -> Dict[str, Any]:
    return envelope(MessageType.ERROR, ErrorPayload(code=code, message=message), correlation_id=correlation_id)
