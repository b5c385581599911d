"""
Event channel vocabulary.

Server-to-client frames are EventEnvelope objects with a closed EventType.
Client-to-server frames are decoded once into a ClientFrame; tags the
gateway does not know decode to ClientFrameType.UNRECOGNIZED.
"""

import enum
import json
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, Field

from sms_gateway.utils import now_millis


class EventType(str, enum.Enum):
    RECEIVED = "received"
    SENT = "sent"
    STATUS = "status"
    ACK = "ack"


class EventEnvelope(BaseModel):
    """
    One frame broadcast to subscribers.

    data values are always strings; timestamp is assigned at emission and
    is unrelated to any message timestamp inside data.
    """
    type: EventType
    data: dict[str, str] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=now_millis)

    def to_frame(self) -> str:
        return self.model_dump_json()


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_event(event_type: EventType, **payload: Any) -> EventEnvelope:
    """Build an envelope, dropping None values and stringifying the rest."""
    data = {key: _stringify(value) for key, value in payload.items() if value is not None}
    return EventEnvelope(type=event_type, data=data)


def received_event(message_id: str, sender: str, body: str, timestamp: int) -> EventEnvelope:
    # 'from' is a keyword, so the payload is assembled as a dict
    return build_event(EventType.RECEIVED, **{
        "id": message_id,
        "from": sender,
        "body": body,
        "timestamp": timestamp,
    })


def sent_event(
    message_id: str,
    to: str,
    body: str,
    success: bool,
    error: Optional[str] = None,
) -> EventEnvelope:
    return build_event(
        EventType.SENT,
        messageId=message_id,
        to=to,
        body=body,
        success=success,
        error=error,
        timestamp=now_millis(),
    )


def status_event(clients: int) -> EventEnvelope:
    return build_event(EventType.STATUS, connected=True, clients=clients)


def ack_event() -> EventEnvelope:
    return build_event(EventType.ACK, received=True)


class ClientFrameType(str, enum.Enum):
    PING = "ping"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class ClientFrame:
    """A decoded client-to-server frame. Only ever acknowledged."""
    type: ClientFrameType
    raw: Optional[str]


def decode_client_frame(text: Optional[str]) -> ClientFrame:
    """
    Decode a frame received from a subscriber.

    Binary frames (text=None), non-JSON text and JSON without a known
    "type" all become UNRECOGNIZED.
    """
    if text is None:
        return ClientFrame(ClientFrameType.UNRECOGNIZED, None)
    try:
        payload = json.loads(text)
    except ValueError:
        return ClientFrame(ClientFrameType.UNRECOGNIZED, text)
    tag = payload.get("type") if isinstance(payload, dict) else None
    try:
        frame_type = ClientFrameType(tag)
    except ValueError:
        frame_type = ClientFrameType.UNRECOGNIZED
    return ClientFrame(frame_type, text)
