"""
Pydantic schemas for callbacks, stored records, outbound payloads and API responses.

This module contains:
- The stored message record
- Inbound telephony callback models (form fields, provider naming)
- Outbound webhook event models (camelCase JSON)
- Push delivery service request/response models
- Query API response models
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


DEVICE_NOT_REGISTERED = "DeviceNotRegistered"


# =============================================================================
# Stored Records
# =============================================================================

class MessageRecord(BaseModel):
    """
    One inbound SMS as persisted and served to the companion client.

    replied implies read; the store enforces it when flags change.
    """
    id: str = Field(..., min_length=1, description="Provider message id (MessageSid)")
    type: Literal["sms"] = Field(default="sms", description="Inbound message type")
    # 'from' is a reserved word in Python, so we use alias
    from_number: str = Field(default="", alias="from", description="Sender phone number")
    to: str = Field(default="", description="Recipient phone number")
    body: str = Field(default="", description="Message text")
    timestamp: str = Field(..., description="Ingestion time, ISO-8601 UTC")
    read: bool = False
    replied: bool = False

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Inbound Callback Models
# =============================================================================

def _blank_to_zero(v: Any) -> Any:
    if v is None or (isinstance(v, str) and not v.strip()):
        return 0
    return v


class SmsCallback(BaseModel):
    """Form fields posted to /sms."""
    from_number: str = Field(default="", alias="From")
    to: str = Field(default="", alias="To")
    body: str = Field(default="", alias="Body")
    message_sid: str = Field(..., alias="MessageSid", min_length=1)
    num_media: int = Field(default=0, alias="NumMedia", ge=0)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("num_media", mode="before")
    @classmethod
    def blank_num_media(cls, v: Any) -> Any:
        return _blank_to_zero(v)


class VoiceCallback(BaseModel):
    """Form fields posted to /voice."""
    from_number: Optional[str] = Field(default=None, alias="From")
    to: Optional[str] = Field(default=None, alias="To")
    call_sid: Optional[str] = Field(default=None, alias="CallSid")
    call_status: Optional[str] = Field(default=None, alias="CallStatus")
    direction: Optional[str] = Field(default=None, alias="Direction")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CallStatusCallback(BaseModel):
    """Form fields posted to /call-status."""
    call_sid: Optional[str] = Field(default=None, alias="CallSid")
    call_status: Optional[str] = Field(default=None, alias="CallStatus")
    from_number: Optional[str] = Field(default=None, alias="From")
    to: Optional[str] = Field(default=None, alias="To")
    call_duration: int = Field(default=0, alias="CallDuration", ge=0)
    recording_url: Optional[str] = Field(default=None, alias="RecordingUrl")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("call_duration", mode="before")
    @classmethod
    def blank_call_duration(cls, v: Any) -> Any:
        return _blank_to_zero(v)

    @field_validator("recording_url", mode="before")
    @classmethod
    def blank_recording_url(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


# =============================================================================
# Outbound Webhook Events
# =============================================================================

class WebhookEvent(BaseModel):
    """Events are sent as camelCase JSON; dump with by_alias=True."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class SmsEvent(WebhookEvent):
    type: Literal["sms"] = "sms"
    from_number: str = Field(alias="from")
    to: str
    body: str
    message_sid: str
    num_media: int = 0
    timestamp: str
    forwarded_to: str


class CallEvent(WebhookEvent):
    type: Literal["call"] = "call"
    from_number: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    call_sid: Optional[str] = None
    call_status: Optional[str] = None
    direction: Optional[str] = None
    timestamp: str
    forwarded_to: str
    action: Literal["incoming_call"] = "incoming_call"


class CallStatusEvent(WebhookEvent):
    type: Literal["call_status"] = "call_status"
    call_sid: Optional[str] = None
    call_status: Optional[str] = None
    from_number: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    call_duration: int = 0
    recording_url: Optional[str] = None
    timestamp: str
    action: Literal["call_completed"] = "call_completed"


# =============================================================================
# Push Delivery Service Models
# =============================================================================

class PushMessage(BaseModel):
    """One notification in a batched push request."""
    to: str
    title: str
    body: str
    sound: str = "default"
    priority: str = "high"
    data: dict[str, Any] = Field(default_factory=dict)


class PushTicketDetails(BaseModel):
    error: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class PushTicket(BaseModel):
    """Per-notification delivery result, aligned by position with the request."""
    status: str
    id: Optional[str] = None
    message: Optional[str] = None
    details: Optional[PushTicketDetails] = None

    model_config = ConfigDict(extra="ignore")

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    @property
    def device_not_registered(self) -> bool:
        """True when the service reports the destination as permanently invalid."""
        return (
            self.is_error
            and self.details is not None
            and self.details.error == DEVICE_NOT_REGISTERED
        )


class PushResponse(BaseModel):
    data: list[PushTicket] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


# =============================================================================
# Query API Models
# =============================================================================

class PushTokenRequest(BaseModel):
    token: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class MessagesListResponse(BaseModel):
    success: bool = True
    messages: list[MessageRecord] = Field(default_factory=list)
    count: int = Field(..., ge=0)


class ActionResponse(BaseModel):
    success: bool = True
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: str


class MessageCountResponse(BaseModel):
    success: bool = True
    total: int = Field(..., ge=0)
    unread: int = Field(..., ge=0)


class RegisterTokenResponse(BaseModel):
    success: bool = True
    message: str
    registered_tokens: int = Field(..., ge=0, alias="registeredTokens")

    model_config = ConfigDict(populate_by_name=True)


class ServiceSummary(BaseModel):
    """Response model for the root liveness/summary document."""
    status: str = "running"
    endpoints: dict[str, str]
    registered_devices: int = Field(..., alias="registeredDevices")
    message_count: int = Field(..., alias="messageCount")
    unread_count: int = Field(..., alias="unreadCount")

    model_config = ConfigDict(populate_by_name=True)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
