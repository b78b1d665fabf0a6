import json

import pytest

from packages.integration.domain import Platform
from packages.integration.errors import NormalizationError, UnsupportedPlatform
from packages.integration.normalizer import normalize


def _raw(doc) -> bytes:
    return json.dumps(doc).encode()


def wa_payload(**msg_overrides):
    msg = {"from": "5730000000", "id": "wamid.1", "timestamp": "1700000000", "type": "text", "text": {"body": "hi"}}
    msg.update(msg_overrides)
    return {"entry": [{"changes": [{"value": {
        "metadata": {"phone_number_id": "PNID-1", "display_phone_number": "+57 300"},
        "messages": [msg],
    }}]}]}


def meta_payload(message=None, ts=1700000000123):
    return {"entry": [{"messaging": [{
        "sender": {"id": "user-9"},
        "recipient": {"id": "page-1"},
        "timestamp": ts,
        "message": message if message is not None else {"mid": "m_1", "text": "hola"},
    }]}]}


def test_whatsapp_text():
    msg = normalize("whatsapp", _raw(wa_payload()))
    assert msg.platform == Platform.whatsapp
    assert msg.sender == "5730000000"
    assert msg.recipient == "PNID-1"
    assert msg.content.type == "text" and msg.content.text == "hi"
    assert msg.timestamp == 1700000000
    assert msg.message_id == "wamid.1"
    assert msg.raw_payload["entry"][0]["changes"][0]["value"]["metadata"]["phone_number_id"] == "PNID-1"


def test_whatsapp_image_keeps_media_and_caption():
    doc = wa_payload(type="image", image={"id": "media-1", "mime_type": "image/jpeg", "caption": "look"})
    del doc["entry"][0]["changes"][0]["value"]["messages"][0]["text"]
    msg = normalize("whatsapp", _raw(doc))
    assert msg.content.type == "image"
    assert msg.content.media.media_id == "media-1"
    assert msg.content.media.mime_type == "image/jpeg"
    assert msg.content.text == "look"


def test_whatsapp_missing_sender_names_the_field():
    doc = wa_payload()
    del doc["entry"][0]["changes"][0]["value"]["messages"][0]["from"]
    with pytest.raises(NormalizationError) as exc:
        normalize("whatsapp", _raw(doc))
    assert exc.value.platform == "whatsapp"
    assert exc.value.field == "entry[0].changes[0].value.messages[0].from"


def test_whatsapp_status_update_without_messages_fails():
    doc = {"entry": [{"changes": [{"value": {"metadata": {"phone_number_id": "P"}, "statuses": [{"id": "x"}]}}]}]}
    with pytest.raises(NormalizationError) as exc:
        normalize("whatsapp", _raw(doc))
    assert exc.value.field == "entry[0].changes[0].value.messages"


def test_whatsapp_text_message_without_body_fails():
    doc = wa_payload()
    del doc["entry"][0]["changes"][0]["value"]["messages"][0]["text"]
    with pytest.raises(NormalizationError) as exc:
        normalize("whatsapp", _raw(doc))
    assert exc.value.field.endswith("messages[0].text.body")


def test_whatsapp_empty_entry_fails():
    with pytest.raises(NormalizationError) as exc:
        normalize("whatsapp", _raw({"entry": []}))
    assert exc.value.field == "entry"


def test_whatsapp_non_numeric_timestamp_fails():
    with pytest.raises(NormalizationError) as exc:
        normalize("whatsapp", _raw(wa_payload(timestamp="yesterday")))
    assert exc.value.field.endswith("messages[0].timestamp")


def test_messenger_text_and_millisecond_timestamp():
    msg = normalize("messenger", _raw(meta_payload()))
    assert msg.platform == Platform.messenger
    assert (msg.sender, msg.recipient) == ("user-9", "page-1")
    assert msg.content.text == "hola"
    assert msg.message_id == "m_1"
    assert msg.timestamp == 1700000000


def test_instagram_reuses_messenger_shape_with_own_tag():
    msg = normalize("instagram", _raw(meta_payload(ts=1700000000)))
    assert msg.platform == Platform.instagram
    assert msg.timestamp == 1700000000
    assert msg.content.text == "hola"


def test_messenger_attachment():
    msg = normalize("messenger", _raw(meta_payload(
        {"mid": "m_2", "attachments": [{"type": "image", "payload": {"url": "https://cdn/x.jpg"}}]}
    )))
    assert msg.content.type == "image"
    assert msg.content.media.url == "https://cdn/x.jpg"


def test_messenger_without_text_or_attachment_fails():
    with pytest.raises(NormalizationError) as exc:
        normalize("instagram", _raw(meta_payload({"mid": "m_3"})))
    assert exc.value.platform == "instagram"
    assert exc.value.field == "entry[0].messaging[0].message.text"


def test_telegram_text():
    doc = {"update_id": 5, "message": {"message_id": 77, "from": {"id": 123, "first_name": "Ana"},
                                       "chat": {"id": -100, "type": "group"}, "date": 1700000001, "text": "hey"}}
    msg = normalize("telegram", _raw(doc))
    assert msg.sender == "123"
    assert msg.recipient == "-100"
    assert msg.message_id == "77"
    assert msg.timestamp == 1700000001
    assert msg.content.text == "hey"


def test_telegram_photo_uses_largest_size():
    doc = {"message": {"message_id": 1, "from": {"id": 1}, "chat": {"id": 1}, "date": 1,
                       "photo": [{"file_id": "small"}, {"file_id": "big"}], "caption": "pic"}}
    msg = normalize("telegram", _raw(doc))
    assert msg.content.type == "image"
    assert msg.content.media.media_id == "big"
    assert msg.content.text == "pic"


def test_telegram_missing_chat_fails():
    doc = {"message": {"message_id": 1, "from": {"id": 1}, "date": 1, "text": "x"}}
    with pytest.raises(NormalizationError) as exc:
        normalize("telegram", _raw(doc))
    assert exc.value.field == "message.chat"


def test_webchat_flat_payload():
    doc = {"message_id": "wc-1", "user_id": "visitor-1", "session_id": "s-1", "text": "hello", "timestamp": 1700000002}
    msg = normalize(Platform.webchat, _raw(doc))
    assert (msg.sender, msg.recipient, msg.content.text) == ("visitor-1", "s-1", "hello")


def test_webchat_empty_text_fails():
    doc = {"message_id": "wc-1", "user_id": "visitor-1", "session_id": "s-1", "text": "", "timestamp": 1}
    with pytest.raises(NormalizationError) as exc:
        normalize("webchat", _raw(doc))
    assert exc.value.field == "text"


def test_tawkto_uses_last_message():
    doc = {
        "event": "chat:transcript_created",
        "timestamp": "2024-01-01T10:00:00Z",
        "visitor": {"id": "v-1", "name": "Ana"},
        "chat": {"id": "chat-1", "messages": [
            {"id": "a", "type": "text", "content": "first", "sender": "visitor", "timestamp": "2024-01-01T10:00:00Z"},
            {"id": "b", "type": "text", "content": "reply", "sender": "agent", "timestamp": "2024-01-01T10:01:00Z"},
        ]},
    }
    msg = normalize("tawkto", _raw(doc))
    assert msg.platform == Platform.webchat
    assert msg.sender == "agent"
    assert msg.recipient == "chat-1"
    assert msg.channel_id == "chat-1"
    assert msg.content.text == "reply"
    assert msg.message_id == "b"
    assert msg.timestamp == 1704103260


def test_tawkto_visitor_message_sender_is_visitor_id():
    doc = {"event": "chat:start", "visitor": {"id": "v-1"},
           "chat": {"id": "chat-1", "messages": [{"content": "hello", "sender": "visitor"}]}}
    msg = normalize("tawkto", _raw(doc))
    assert msg.sender == "v-1"
    assert msg.message_id.startswith("tawkto_chat-1_")


def test_mailchimp_subscribe():
    doc = {"type": "subscribe", "fired_at": "2009-03-26 21:35:57", "list_id": "L1",
           "data": {"email": "api@example.com", "list_id": "L1"}}
    msg = normalize("mailchimp", _raw(doc))
    assert msg.platform == Platform.mailchimp
    assert msg.content.type == "subscription"
    assert msg.content.text == "User subscribed to list"
    assert msg.sender == "L1"
    assert msg.recipient == "api@example.com"
    assert msg.timestamp == 1238103357
    assert msg.message_id == "mailchimp_subscribe_1238103357"


def test_mailchimp_upemail_targets_new_address():
    doc = {"type": "upemail", "fired_at": "2024-01-01T00:00:00Z",
           "data": {"list_id": "L1", "old_email": "a@x.com", "new_email": "b@x.com"}}
    msg = normalize("mailchimp", _raw(doc))
    assert msg.content.type == "email_changed"
    assert msg.recipient == "b@x.com"
    assert "a@x.com" in msg.content.text


def test_mailchimp_campaign_and_unknown_events():
    campaign = normalize("mailchimp", _raw({"type": "campaign", "list_id": "L1", "data": {"id": "c-9"}}))
    assert campaign.content.type == "campaign_event"
    assert campaign.content.text == "Campaign event: c-9"
    other = normalize("mailchimp", _raw({"type": "mystery", "list_id": "L1"}))
    assert other.content.type == "unknown"


def test_mailchimp_subscribe_without_email_fails():
    with pytest.raises(NormalizationError) as exc:
        normalize("mailchimp", _raw({"type": "subscribe", "list_id": "L1", "data": {}}))
    assert exc.value.field == "data.email"


def test_invalid_json_fails_with_body_field():
    with pytest.raises(NormalizationError) as exc:
        normalize("telegram", b"not json")
    assert exc.value.field == "body"


def test_non_object_body_fails():
    with pytest.raises(NormalizationError):
        normalize("webchat", b"[1, 2]")


def test_unknown_source_is_unsupported():
    with pytest.raises(UnsupportedPlatform):
        normalize("google_calendar", b"{}")
