from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    # Naive UTC: SQLite drops tzinfo, so every stored timestamp is naive.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Platform(str, Enum):
    whatsapp = "whatsapp"
    messenger = "messenger"
    instagram = "instagram"
    telegram = "telegram"
    webchat = "webchat"
    mailchimp = "mailchimp"
    google_calendar = "google_calendar"


class Provider(str, Enum):
    meta = "meta"
    twilio = "twilio"
    dialog360 = "360dialog"
    custom = "custom"
    mailchimp = "mailchimp"
    google = "google"


class IntegrationStatus(str, Enum):
    active = "active"
    disabled = "disabled"
    error = "error"


class MessageStatus(str, Enum):
    queued = "queued"
    sent = "sent"
    failed = "failed"


class TokenState(str, Enum):
    valid = "valid"
    expiring_soon = "expiring_soon"
    expired = "expired"


class MediaContent(BaseModel):
    url: Optional[str] = None
    media_id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None


class MessageContent(BaseModel):
    type: str = "text"
    text: Optional[str] = None
    media: Optional[MediaContent] = None


class NormalizedMessage(BaseModel):
    platform: Platform
    sender: str
    recipient: str
    content: MessageContent
    timestamp: int
    message_id: str
    tenant_id: Optional[str] = None
    channel_id: Optional[str] = None
    raw_payload: Any = None

    def forward_body(self) -> Dict[str, Any]:
        body = {
            "platform": self.platform.value,
            "sender": self.sender,
            "recipient": self.recipient,
            "content": self.content.model_dump(exclude_none=True),
            "timestamp": self.timestamp,
            "message_id": self.message_id,
            "raw_payload": self.raw_payload,
        }
        if self.tenant_id:
            body["tenant_id"] = self.tenant_id
        if self.channel_id:
            body["channel_id"] = self.channel_id
        return body


class ChannelIntegration(BaseModel):
    """In-memory view of a channel; tokens here are always plaintext."""

    id: Optional[str] = None
    tenant_id: str
    platform: Platform
    provider: Provider
    access_token: str = ""
    refresh_token: Optional[str] = None
    webhook_url: Optional[str] = None
    status: IntegrationStatus = IntegrationStatus.active
    config: Dict[str, Any] = Field(default_factory=dict)
    token_expiry: Optional[datetime] = None
    last_rotated: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def public(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"access_token", "refresh_token"})
        data["has_access_token"] = bool(self.access_token)
        return data


class InboundRecord(BaseModel):
    id: str
    platform: Platform
    payload: bytes
    received_at: datetime
    processed: bool = False


class OutboundLog(BaseModel):
    id: str
    channel_id: str
    recipient: str
    content: Dict[str, Any]
    status: MessageStatus = MessageStatus.queued
    response: Optional[Dict[str, Any]] = None
    timestamp: datetime


class ChatMessage(BaseModel):
    """One entry of a conversation; ``direction`` is ``inbound`` or ``outbound``."""

    id: str
    direction: str
    platform: Platform
    user_id: str
    content: MessageContent
    timestamp: int
    message_id: Optional[str] = None
    status: Optional[MessageStatus] = None


class TokenStatus(BaseModel):
    channel_id: str
    platform: Platform
    tenant_id: str
    token_expiry: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    status: TokenState = TokenState.valid
    last_rotated: Optional[datetime] = None


class BroadcastItem(BaseModel):
    platform: Platform
    recipient: str
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class BroadcastResult(BaseModel):
    total_sent: int = 0
    total_failed: int = 0
    results: List[BroadcastItem] = Field(default_factory=list)
