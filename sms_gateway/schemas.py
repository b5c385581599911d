"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses

Wire field names are camelCase; Python attributes stay snake_case.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from sms_gateway.utils import format_timestamp, now_millis


class CamelModel(BaseModel):
    """Base model serializing to camelCase and accepting either form."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendRequest(BaseModel):
    """
    Body of POST /send.

    Both fields must be present, strings, and not blank.
    """
    to: str = Field(..., min_length=1, description="Destination address")
    message: str = Field(..., min_length=1, description="Message body")

    model_config = ConfigDict(
        strict=True,
        json_schema_extra={
            "examples": [{"to": "+15551234567", "message": "hi"}]
        },
    )

    @field_validator("to", "message")
    @classmethod
    def not_blank(cls, v: str, info) -> str:
        if not v.strip():
            raise ValueError(f"{info.field_name} must not be blank")
        return v


class IncomingMessageRequest(BaseModel):
    """
    Body of POST /webhook: a message received by the device radio.
    """
    # 'from' is a reserved word in Python, so we use alias
    from_address: str = Field(..., alias="from", min_length=1, description="Sender address")
    body: str = Field(..., description="Message text")
    timestamp: Optional[int] = Field(None, ge=0, le=2**63 - 1, description="Receipt time, epoch milliseconds")

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class MessageResponse(CamelModel):
    """
    A single stored message.
    Maps database fields to API response format.
    """
    id: str
    thread_id: str
    address: str
    body: str
    timestamp: int = Field(..., description="Store timestamp, epoch milliseconds")
    date_formatted: str
    read: bool
    kind: str

    @classmethod
    def from_row(cls, row) -> "MessageResponse":
        return cls(
            id=str(row.id),
            thread_id=str(row.thread_id),
            address=row.address,
            body=row.body or "",
            timestamp=row.date,
            date_formatted=format_timestamp(row.date),
            read=bool(row.read),
            kind=row.kind,
        )


class InboxResponse(CamelModel):
    """
    Response model for GET /inbox.

    total_count and unread_count describe the whole inbox, ignoring
    filters and limit.
    """
    messages: list[MessageResponse] = Field(default_factory=list)
    total_count: int = Field(..., ge=0)
    unread_count: int = Field(..., ge=0)
    timestamp: int = Field(default_factory=now_millis)


class MarkReadResponse(BaseModel):
    success: bool
    id: str
    error: Optional[str] = None


class DeleteResponse(BaseModel):
    success: bool
    id: str
    deleted: int = Field(..., ge=0, description="Rows removed from the store")
    error: Optional[str] = None


class SendResponse(CamelModel):
    """
    Response model for POST /send.

    In async mode success means the request was accepted; the delivery
    outcome arrives later as a 'sent' event carrying the same message_id.
    """
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: int = Field(default_factory=now_millis)


class StatusResponse(CamelModel):
    status: Literal["running", "stopped"]
    send_capable: bool
    read_capable: bool
    port: int
    event_port: int
    timestamp: int = Field(default_factory=now_millis)


class WebhookResponse(BaseModel):
    """Response model for successful inbound message ingestion."""
    status: str = Field(default="ok", description="Operation status")
    id: str = Field(..., description="Store id of the new message")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")
    success: bool = False
