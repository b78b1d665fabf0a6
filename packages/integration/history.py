import calendar
from typing import Any, Dict, List, Optional

from packages.integration.domain import ChatMessage, MessageContent, NormalizedMessage, OutboundLog, Platform
from packages.integration.errors import NormalizationError
from packages.integration.normalizer import normalize

# platforms fed by more than one webhook source
_SOURCES = {Platform.webchat: ("webchat", "tawkto")}


def decode_inbound(platform: Platform, payload: bytes) -> Optional[NormalizedMessage]:
    for source in _SOURCES.get(platform, (platform.value,)):
        try:
            return normalize(source, payload)
        except NormalizationError:
            continue
    return None


class MessageHistory:
    def __init__(self, inbound_store, outbound_logs):
        self.inbound_store = inbound_store
        self.outbound_logs = outbound_logs

    def inbound(self, platform: Optional[Platform] = None, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        out = []
        for rec in self.inbound_store.list(platform, limit=limit, offset=offset):
            msg = decode_inbound(rec.platform, rec.payload)
            out.append({
                "id": rec.id,
                "platform": rec.platform.value,
                "received_at": rec.received_at.isoformat() if rec.received_at else None,
                "processed": rec.processed,
                "payload": rec.payload.decode(errors="replace"),
                "message": msg.model_dump(mode="json", exclude={"raw_payload"}) if msg else None,
            })
        return out

    def outbound(self, platform: Optional[Platform] = None, limit: int = 50, offset: int = 0,
                 tenant_id: Optional[str] = None) -> List[OutboundLog]:
        return self.outbound_logs.list(platform, limit=limit, offset=offset, tenant_id=tenant_id)

    def chat_history(self, platform: Platform, user_id: str, limit: int = 100, scan: int = 1000) -> List[ChatMessage]:
        """Both sides of a conversation with ``user_id``, oldest first.

        Inbound entries are rebuilt from the last ``scan`` stored webhooks;
        outbound ones come from the send log of the platform's channels.
        """
        platform = Platform(platform)
        found = []
        for rec in self.inbound_store.list(platform, limit=scan, offset=0):
            msg = decode_inbound(rec.platform, rec.payload)
            if msg is None or user_id not in (msg.sender, msg.recipient):
                continue
            found.append(ChatMessage(
                id=rec.id, direction="inbound", platform=platform, user_id=user_id,
                content=msg.content, timestamp=msg.timestamp, message_id=msg.message_id,
            ))
        for log in self.outbound_logs.get_by_recipient(platform, user_id, limit=scan):
            found.append(ChatMessage(
                id=log.id, direction="outbound", platform=platform, user_id=user_id,
                content=MessageContent.model_validate(log.content or {}),
                timestamp=calendar.timegm(log.timestamp.utctimetuple()), status=log.status,
            ))
        found.sort(key=lambda m: m.timestamp)
        return found[-limit:]
