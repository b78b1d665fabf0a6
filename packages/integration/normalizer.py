"""Per-platform webhook decoders producing a ``NormalizedMessage``.

Each platform's payload is described by its own pydantic model; anything
the model rejects surfaces as ``NormalizationError`` naming the platform and
the dotted path of the offending field (``entry[0].changes[0].value...``).
"""
import json
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from packages.integration.domain import MediaContent, MessageContent, NormalizedMessage, Platform
from packages.integration.errors import NormalizationError, UnsupportedPlatform

# webhook source -> platform tag on the normalized message
SOURCE_PLATFORM = {
    "whatsapp": Platform.whatsapp,
    "messenger": Platform.messenger,
    "instagram": Platform.instagram,
    "telegram": Platform.telegram,
    "webchat": Platform.webchat,
    "tawkto": Platform.webchat,
    "mailchimp": Platform.mailchimp,
}

_WA_MEDIA_TYPES = ("image", "video", "audio", "document", "sticker")


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# --- WhatsApp Cloud API ---

class _WAText(_Payload):
    body: str = Field(min_length=1)


class _WAMedia(_Payload):
    id: Optional[str] = None
    link: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None


class _WAMessage(_Payload):
    sender: str = Field(alias="from", min_length=1)
    id: str = Field(min_length=1)
    timestamp: int
    type: str = "text"
    text: Optional[_WAText] = None
    image: Optional[_WAMedia] = None
    video: Optional[_WAMedia] = None
    audio: Optional[_WAMedia] = None
    document: Optional[_WAMedia] = None
    sticker: Optional[_WAMedia] = None


class _WAMetadata(_Payload):
    phone_number_id: str = Field(min_length=1)
    display_phone_number: Optional[str] = None


class _WAValue(_Payload):
    metadata: _WAMetadata
    messages: List[_WAMessage] = Field(min_length=1)


class _WAChange(_Payload):
    value: _WAValue


class _WAEntry(_Payload):
    changes: List[_WAChange] = Field(min_length=1)


class WhatsAppPayload(_Payload):
    entry: List[_WAEntry] = Field(min_length=1)


# --- Meta Messaging API (Messenger / Instagram) ---

class _MetaParty(_Payload):
    id: str = Field(min_length=1)


class _MetaAttachmentPayload(_Payload):
    url: Optional[str] = None


class _MetaAttachment(_Payload):
    type: str
    payload: Optional[_MetaAttachmentPayload] = None


class _MetaMessage(_Payload):
    mid: str = Field(min_length=1)
    text: Optional[str] = None
    attachments: Optional[List[_MetaAttachment]] = None


class _MetaMessaging(_Payload):
    sender: _MetaParty
    recipient: _MetaParty
    timestamp: int
    message: _MetaMessage


class _MetaEntry(_Payload):
    messaging: List[_MetaMessaging] = Field(min_length=1)


class MessengerPayload(_Payload):
    entry: List[_MetaEntry] = Field(min_length=1)


# --- Telegram Bot API ---

class _TgUser(_Payload):
    id: int


class _TgChat(_Payload):
    id: int


class _TgMessage(_Payload):
    message_id: int
    sender: _TgUser = Field(alias="from")
    chat: _TgChat
    date: int
    text: Optional[str] = None
    caption: Optional[str] = None
    photo: Optional[List[Dict[str, Any]]] = None
    document: Optional[Dict[str, Any]] = None


class TelegramPayload(_Payload):
    update_id: Optional[int] = None
    message: _TgMessage


# --- Webchat widget (flat) ---

class WebchatPayload(_Payload):
    message_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    timestamp: int


# --- Tawk.to ---

class _TawkVisitor(_Payload):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    email: Optional[str] = None


class _TawkMessage(_Payload):
    id: Optional[str] = None
    type: str = "text"
    content: str = Field(min_length=1)
    sender: str = "visitor"
    timestamp: Optional[datetime] = None


class _TawkChat(_Payload):
    id: str = Field(min_length=1)
    session: Optional[str] = None
    status: Optional[str] = None
    messages: List[_TawkMessage] = Field(min_length=1)


class TawkPayload(_Payload):
    event: str
    timestamp: Optional[datetime] = None
    visitor: _TawkVisitor
    chat: _TawkChat


# --- Mailchimp list webhooks ---

class MailchimpPayload(_Payload):
    type: str = Field(min_length=1)
    fired_at: Optional[str] = None
    list_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


def _field_path(loc) -> str:
    out = ""
    for part in loc:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += ("." if out else "") + str(part)
    return out or "body"


def _validate(model, platform: str, doc: Any):
    try:
        return model.model_validate(doc)
    except ValidationError as e:
        first = e.errors()[0]
        raise NormalizationError(platform, _field_path(first.get("loc", ())), first.get("msg", ""))


def _unix(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _now() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def _whatsapp(doc: Any) -> NormalizedMessage:
    payload = _validate(WhatsAppPayload, "whatsapp", doc)
    value = payload.entry[0].changes[0].value
    msg = value.messages[0]
    prefix = "entry[0].changes[0].value.messages[0]"
    content = MessageContent(type=msg.type)
    if msg.type == "text":
        if msg.text is None:
            raise NormalizationError("whatsapp", f"{prefix}.text.body")
        content.text = msg.text.body
    elif msg.type in _WA_MEDIA_TYPES:
        media = getattr(msg, msg.type)
        if media is None:
            raise NormalizationError("whatsapp", f"{prefix}.{msg.type}")
        content.media = MediaContent(
            url=media.link, media_id=media.id, mime_type=media.mime_type, caption=media.caption
        )
        content.text = media.caption
    return NormalizedMessage(
        platform=Platform.whatsapp,
        sender=msg.sender,
        recipient=value.metadata.phone_number_id,
        content=content,
        timestamp=msg.timestamp,
        message_id=msg.id,
        raw_payload=doc,
    )


def _meta_messaging(platform: Platform, doc: Any) -> NormalizedMessage:
    payload = _validate(MessengerPayload, platform.value, doc)
    event = payload.entry[0].messaging[0]
    msg = event.message
    if msg.text:
        content = MessageContent(type="text", text=msg.text)
    elif msg.attachments:
        att = msg.attachments[0]
        content = MessageContent(
            type=att.type, media=MediaContent(url=att.payload.url if att.payload else None)
        )
    else:
        raise NormalizationError(platform.value, "entry[0].messaging[0].message.text")
    ts = event.timestamp
    if ts > 10 ** 11:
        # Meta sends milliseconds
        ts //= 1000
    return NormalizedMessage(
        platform=platform,
        sender=event.sender.id,
        recipient=event.recipient.id,
        content=content,
        timestamp=ts,
        message_id=msg.mid,
        raw_payload=doc,
    )


def _telegram(doc: Any) -> NormalizedMessage:
    payload = _validate(TelegramPayload, "telegram", doc)
    msg = payload.message
    if msg.photo:
        largest = msg.photo[-1]
        content = MessageContent(
            type="image", text=msg.caption, media=MediaContent(media_id=largest.get("file_id"), caption=msg.caption)
        )
    elif msg.document:
        content = MessageContent(
            type="document",
            text=msg.caption,
            media=MediaContent(
                media_id=msg.document.get("file_id"), mime_type=msg.document.get("mime_type"), caption=msg.caption
            ),
        )
    elif msg.text or msg.caption:
        content = MessageContent(type="text", text=msg.text or msg.caption)
    else:
        raise NormalizationError("telegram", "message.text")
    return NormalizedMessage(
        platform=Platform.telegram,
        sender=str(msg.sender.id),
        recipient=str(msg.chat.id),
        content=content,
        timestamp=msg.date,
        message_id=str(msg.message_id),
        raw_payload=doc,
    )


def _webchat(doc: Any) -> NormalizedMessage:
    payload = _validate(WebchatPayload, "webchat", doc)
    return NormalizedMessage(
        platform=Platform.webchat,
        sender=payload.user_id,
        recipient=payload.session_id,
        content=MessageContent(type="text", text=payload.text),
        timestamp=payload.timestamp,
        message_id=payload.message_id,
        raw_payload=doc,
    )


def _tawkto(doc: Any) -> NormalizedMessage:
    payload = _validate(TawkPayload, "tawkto", doc)
    chat = payload.chat
    last = chat.messages[-1]
    ts = _unix(last.timestamp) or _unix(payload.timestamp) or _now()
    sender = "agent" if last.sender == "agent" else payload.visitor.id
    return NormalizedMessage(
        platform=Platform.webchat,
        sender=sender,
        recipient=chat.id,
        content=MessageContent(type=last.type or "text", text=last.content),
        timestamp=ts,
        message_id=last.id or f"tawkto_{chat.id}_{ts}",
        channel_id=chat.id,
        raw_payload=doc,
    )


def _parse_fired_at(value: Optional[str]) -> int:
    if value:
        try:
            return _unix(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass
        try:
            # Mailchimp's own format, always UTC
            return _unix(datetime.strptime(value, "%Y-%m-%d %H:%M:%S"))
        except ValueError:
            pass
    return _now()


def _required(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not value:
        raise NormalizationError("mailchimp", f"data.{key}")
    return str(value)


def _mailchimp(doc: Any) -> NormalizedMessage:
    payload = _validate(MailchimpPayload, "mailchimp", doc)
    data = payload.data
    list_id = payload.list_id or data.get("list_id")
    if not list_id:
        raise NormalizationError("mailchimp", "list_id")
    list_id = str(list_id)
    kind = payload.type
    if kind == "subscribe":
        content_type, recipient, text = "subscription", _required(data, "email"), "User subscribed to list"
    elif kind == "unsubscribe":
        content_type, recipient, text = "unsubscription", _required(data, "email"), "User unsubscribed from list"
    elif kind == "profile":
        content_type, recipient, text = "profile_update", _required(data, "email"), "Subscriber profile updated"
    elif kind == "cleaned":
        content_type, recipient = "email_cleaned", _required(data, "email")
        text = f"Email cleaned from list ({data.get('reason') or 'unspecified'})"
    elif kind == "upemail":
        content_type, recipient = "email_changed", _required(data, "new_email")
        text = f"Email changed from {data.get('old_email') or 'unknown'} to {recipient}"
    elif kind == "campaign":
        campaign_id = data.get("campaign_id") or data.get("id")
        if not campaign_id:
            raise NormalizationError("mailchimp", "data.campaign_id")
        content_type, recipient, text = "campaign_event", list_id, f"Campaign event: {campaign_id}"
    else:
        content_type, recipient, text = "unknown", list_id, f"Unknown Mailchimp event: {kind}"
    ts = _parse_fired_at(payload.fired_at)
    return NormalizedMessage(
        platform=Platform.mailchimp,
        sender=list_id,
        recipient=recipient,
        content=MessageContent(type=content_type, text=text),
        timestamp=ts,
        message_id=f"mailchimp_{kind}_{ts}",
        raw_payload=doc,
    )


_DECODERS = {
    "whatsapp": _whatsapp,
    "messenger": partial(_meta_messaging, Platform.messenger),
    "instagram": partial(_meta_messaging, Platform.instagram),
    "telegram": _telegram,
    "webchat": _webchat,
    "tawkto": _tawkto,
    "mailchimp": _mailchimp,
}


def normalize(source, raw: bytes) -> NormalizedMessage:
    """Decode ``raw`` webhook bytes from ``source`` (a platform or ``tawkto``)."""
    key = getattr(source, "value", source)
    decoder = _DECODERS.get(key)
    if decoder is None:
        raise UnsupportedPlatform(f"no webhook decoder for {key}")
    try:
        doc = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise NormalizationError(key, "body", f"invalid JSON: {e}")
    return decoder(doc)
