"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the admin-facing JSON endpoints
- Response models for API responses

Field names follow Python conventions; the JSON names used by the admin UI
(camelCase, "from") are declared as aliases.
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

from connect_sms.sms_provider import ProviderMessage


class CamelModel(BaseModel):
    model_config = {"populate_by_name": True}


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CheckMessagesRequest(CamelModel):
    """Body of POST /checkTwilioMessages."""
    phone_number: str = Field(..., alias="phoneNumber", min_length=1)
    church_id: str = Field(..., alias="churchId", min_length=1)
    member_id: Optional[str] = Field(None, alias="memberId")
    visitor_id: Optional[str] = Field(None, alias="visitorId")

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {"phoneNumber": "7035551234", "churchId": "church-A", "memberId": "m1"}
            ]
        },
    }


class SendSmsRequest(CamelModel):
    """
    Body of POST /sendSMS.

    message_id names a message document the UI already created for this send;
    it is updated instead of adding a new one.
    """
    to: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=1600)
    church_id: str = Field(..., alias="churchId", min_length=1)
    sender_id: Optional[str] = Field(None, alias="senderId")
    member_id: Optional[str] = Field(None, alias="memberId")
    member_name: Optional[str] = Field(None, alias="memberName")
    visitor_id: Optional[str] = Field(None, alias="visitorId")
    visitor_name: Optional[str] = Field(None, alias="visitorName")
    message_id: Optional[str] = Field(None, alias="messageId")
    client_message_id: Optional[str] = Field(None, alias="clientMessageId")


class MarkReadRequest(CamelModel):
    """Body of POST /markMessagesRead. Exactly one of member_id / visitor_id."""
    church_id: str = Field(..., alias="churchId", min_length=1)
    member_id: Optional[str] = Field(None, alias="memberId")
    visitor_id: Optional[str] = Field(None, alias="visitorId")
    # Messages sent by the reader are never counted as unread for them
    reader_id: Optional[str] = Field(None, alias="readerId")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    success: bool = False
    error: str


class ProviderMessageResponse(CamelModel):
    """A message as fetched from the SMS provider."""
    sid: str
    body: Optional[str] = None
    from_phone: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None
    direction: Optional[str] = None
    status: Optional[str] = None
    date_sent: Optional[datetime] = Field(None, alias="dateSent")

    @classmethod
    def from_provider(cls, message: ProviderMessage) -> "ProviderMessageResponse":
        return cls(
            sid=message.sid,
            body=message.body,
            from_phone=message.from_,
            to=message.to,
            direction=message.direction,
            status=message.status,
            date_sent=message.date_sent,
        )


class CheckMessagesResponse(CamelModel):
    success: bool = True
    messages: list[ProviderMessageResponse] = Field(default_factory=list)
    new_message_count: int = Field(0, alias="newMessageCount", ge=0)


class SMSResponsesResponse(CamelModel):
    success: bool = True
    messages: list[ProviderMessageResponse] = Field(default_factory=list)
    new_messages: int = Field(0, alias="newMessages", ge=0)


class SendSmsResponse(CamelModel):
    success: bool = True
    # Provider sid of the sent message
    message_id: str = Field(..., alias="messageId")


class MessageResponse(CamelModel):
    """
    Response model for a single stored message.
    Maps database fields to the document field names the UI reads.
    """
    id: str
    from_phone: Optional[str] = Field(None, alias="from")
    to_phone: Optional[str] = Field(None, alias="to")
    body: Optional[str] = None
    message: Optional[str] = None
    direction: str
    status: Optional[str] = None
    sent_at: datetime = Field(..., alias="sentAt")
    timestamp: datetime
    church_id: Optional[str] = Field(None, alias="churchId")
    member_id: Optional[str] = Field(None, alias="memberId")
    visitor_id: Optional[str] = Field(None, alias="visitorId")
    sender_id: Optional[str] = Field(None, alias="senderId")
    twilio_sid: Optional[str] = Field(None, alias="twilioSid")
    is_read: bool = Field(..., alias="isRead")

    model_config = {
        "populate_by_name": True,
        "from_attributes": True,  # Allow creating from ORM objects
    }


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages with pagination.

    Contains:
    - data: messages of the conversation
    - total: total count of messages matching filters (ignoring pagination)
    - limit: number of messages per page
    - offset: starting position
    """
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class UnreadCountsResponse(BaseModel):
    success: bool = True
    members: Dict[str, int] = Field(default_factory=dict)
    visitors: Dict[str, int] = Field(default_factory=dict)


class MarkReadResponse(CamelModel):
    success: bool = True
    updated: int = Field(..., ge=0, description="Messages newly marked as read")
    unread_count: int = Field(..., alias="unreadCount", ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
