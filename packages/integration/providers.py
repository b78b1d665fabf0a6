"""Outbound provider strategies, one per (platform, provider) pair.

``PROVIDER_STRATEGIES`` is the closed set of supported combinations;
Telegram and Webchat are provider-agnostic and are keyed with ``None``.
Each strategy validates the integration config with its own model and
builds the request; ``ProviderClient`` performs it with a bounded timeout.
"""
from typing import Any, Dict, Optional

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, HttpUrl, ValidationError

from packages.integration.domain import ChannelIntegration, MessageContent, Platform, Provider
from packages.integration.errors import InvalidRequest, ProviderError, ProviderUnavailable, UnsupportedPlatform

GRAPH_URL = "https://graph.facebook.com"
DIALOG360_URL = "https://waba.360dialog.io/v1/messages"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"
TELEGRAM_URL = "https://api.telegram.org/bot{token}/{method}"

_WA_MEDIA = ("image", "video", "audio", "document", "sticker")
_CAPTIONED = ("image", "video", "document")


class _Config(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MetaWhatsAppConfig(_Config):
    phone_number_id: str = Field(min_length=1)
    business_account_id: Optional[str] = None


class Dialog360Config(_Config):
    namespace: Optional[str] = None


class TwilioConfig(_Config):
    account_sid: str = Field(min_length=1)
    from_number: str = Field(min_length=1, validation_alias=AliasChoices("from_number", "from"))


class MetaPageConfig(_Config):
    page_id: Optional[str] = None
    instagram_account_id: Optional[str] = None


class TelegramConfig(_Config):
    bot_token: Optional[str] = None


class WebchatConfig(_Config):
    webchat_url: HttpUrl


def _require_text(content: MessageContent) -> str:
    if not content.text:
        raise InvalidRequest("content.text is required for text messages")
    return content.text


def _media_ref(content: MessageContent) -> Dict[str, str]:
    media = content.media
    if media is None or not (media.url or media.media_id):
        raise InvalidRequest(f"content.media with url or media_id is required for {content.type} messages")
    return {"link": media.url} if media.url else {"id": media.media_id}


class ProviderStrategy:
    config_model = _Config

    def config(self, integration: ChannelIntegration):
        try:
            return self.config_model.model_validate(integration.config or {})
        except ValidationError as e:
            raise InvalidRequest(
                f"invalid {integration.platform.value}/{integration.provider.value} config",
                {"errors": [".".join(str(p) for p in err["loc"]) for err in e.errors()]},
            )

    def request(self, integration: ChannelIntegration, recipient: str, content: MessageContent, settings) -> Dict[str, Any]:
        raise NotImplementedError


class MetaWhatsApp(ProviderStrategy):
    config_model = MetaWhatsAppConfig

    def request(self, integration, recipient, content, settings):
        cfg = self.config(integration)
        payload: Dict[str, Any] = {"messaging_product": "whatsapp", "to": recipient, "type": content.type}
        if content.type == "text":
            payload["text"] = {"body": _require_text(content)}
        elif content.type in _WA_MEDIA:
            obj = _media_ref(content)
            if content.type in _CAPTIONED and content.media.caption:
                obj["caption"] = content.media.caption
            payload[content.type] = obj
        else:
            raise InvalidRequest(f"unsupported whatsapp content type {content.type}")
        return {
            "url": f"{GRAPH_URL}/{settings.graph_api_version}/{cfg.phone_number_id}/messages",
            "headers": {"Authorization": f"Bearer {integration.access_token}"},
            "json": payload,
        }


class Dialog360WhatsApp(ProviderStrategy):
    config_model = Dialog360Config

    def request(self, integration, recipient, content, settings):
        self.config(integration)
        payload: Dict[str, Any] = {"to": recipient, "type": content.type}
        if content.type == "text":
            payload["text"] = {"body": _require_text(content)}
        elif content.type in _WA_MEDIA:
            payload[content.type] = _media_ref(content)
        else:
            raise InvalidRequest(f"unsupported whatsapp content type {content.type}")
        return {"url": DIALOG360_URL, "headers": {"D360-API-KEY": integration.access_token}, "json": payload}


class TwilioWhatsApp(ProviderStrategy):
    config_model = TwilioConfig

    def request(self, integration, recipient, content, settings):
        cfg = self.config(integration)
        form = {"From": f"whatsapp:{cfg.from_number}", "To": f"whatsapp:{recipient}"}
        if content.media and content.media.url:
            form["MediaUrl"] = content.media.url
            form["Body"] = content.text or content.media.caption or ""
        else:
            form["Body"] = _require_text(content)
        return {
            "url": TWILIO_URL.format(account_sid=cfg.account_sid),
            "auth": (cfg.account_sid, integration.access_token),
            "data": form,
        }


class MetaPageMessaging(ProviderStrategy):
    """Messenger and Instagram share Meta's Send API."""

    config_model = MetaPageConfig

    def request(self, integration, recipient, content, settings):
        self.config(integration)
        if content.type == "text":
            message: Dict[str, Any] = {"text": _require_text(content)}
        else:
            ref = _media_ref(content)
            if "link" not in ref:
                raise InvalidRequest("meta attachments require content.media.url")
            kind = "file" if content.type == "document" else content.type
            message = {"attachment": {"type": kind, "payload": {"url": ref["link"], "is_reusable": True}}}
        return {
            "url": f"{GRAPH_URL}/{settings.graph_api_version}/me/messages",
            "headers": {"Authorization": f"Bearer {integration.access_token}"},
            "json": {"recipient": {"id": recipient}, "message": message},
        }


class TelegramBot(ProviderStrategy):
    config_model = TelegramConfig

    def request(self, integration, recipient, content, settings):
        cfg = self.config(integration)
        token = cfg.bot_token or integration.access_token
        if not token:
            raise InvalidRequest("telegram integration has no bot_token")
        if content.type == "text":
            method, payload = "sendMessage", {"chat_id": recipient, "text": _require_text(content)}
        elif content.type in ("image", "document"):
            ref = _media_ref(content)
            field = "photo" if content.type == "image" else "document"
            method = "sendPhoto" if content.type == "image" else "sendDocument"
            payload = {"chat_id": recipient, field: ref.get("link") or ref.get("id")}
            if content.media.caption or content.text:
                payload["caption"] = content.media.caption or content.text
        else:
            raise InvalidRequest(f"unsupported telegram content type {content.type}")
        return {"url": TELEGRAM_URL.format(token=token, method=method), "json": payload}


class WebchatBackend(ProviderStrategy):
    config_model = WebchatConfig

    def request(self, integration, recipient, content, settings):
        cfg = self.config(integration)
        payload: Dict[str, Any] = {"session_id": recipient, "message": content.text or "", "type": content.type}
        if content.media is not None:
            payload["media"] = content.media.model_dump(exclude_none=True)
        req: Dict[str, Any] = {"url": str(cfg.webchat_url).rstrip("/") + "/api/messages", "json": payload}
        if integration.access_token:
            req["headers"] = {"Authorization": f"Bearer {integration.access_token}"}
        return req


PROVIDER_STRATEGIES = {
    (Platform.whatsapp, Provider.meta): MetaWhatsApp(),
    (Platform.whatsapp, Provider.dialog360): Dialog360WhatsApp(),
    (Platform.whatsapp, Provider.twilio): TwilioWhatsApp(),
    (Platform.messenger, Provider.meta): MetaPageMessaging(),
    (Platform.instagram, Provider.meta): MetaPageMessaging(),
    (Platform.telegram, None): TelegramBot(),
    (Platform.webchat, None): WebchatBackend(),
}


def resolve_strategy(platform: Platform, provider: Provider) -> ProviderStrategy:
    strategy = PROVIDER_STRATEGIES.get((platform, provider)) or PROVIDER_STRATEGIES.get((platform, None))
    if strategy is None:
        raise UnsupportedPlatform(f"no outbound route for {platform.value} via {provider.value}")
    return strategy


def validate_config(integration: ChannelIntegration) -> None:
    """Check the provider config of channels that can send; inbound-only ones pass."""
    try:
        strategy = resolve_strategy(integration.platform, integration.provider)
    except UnsupportedPlatform:
        return
    strategy.config(integration)


def _body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text[:1000]


class ProviderClient:
    def __init__(self, settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.client = client

    def send(self, integration: ChannelIntegration, recipient: str, content: MessageContent) -> Dict[str, Any]:
        """Perform the provider call; returns ``{status_code, body}`` on success."""
        strategy = resolve_strategy(integration.platform, integration.provider)
        req = strategy.request(integration, recipient, content, self.settings)
        post = self.client.post if self.client is not None else httpx.post
        try:
            resp = post(timeout=self.settings.provider_timeout, **req)
        except httpx.InvalidURL as e:
            raise InvalidRequest(f"invalid {integration.platform.value} provider url: {e}")
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"{integration.platform.value} provider timed out: {e}")
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"{integration.platform.value} provider unreachable: {e}")
        body = _body(resp)
        if resp.status_code >= 400:
            raise ProviderError(resp.status_code, body)
        return {"status_code": resp.status_code, "body": body}
