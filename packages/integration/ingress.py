import hashlib
import hmac
from enum import Enum
from typing import Mapping, Optional

import httpx
from pydantic import BaseModel

from packages.integration.domain import NormalizedMessage, Platform
from packages.integration.errors import (
    ConfigurationError,
    ForwardingError,
    InvalidRequest,
    NormalizationError,
    NotFound,
    PersistenceError,
    SignatureInvalid,
    UnsupportedPlatform,
)
from packages.integration.logs import get_logger
from packages.integration.metrics import AUDIT_PERSISTENCE_FAILURES, WEBHOOKS_RECEIVED, WEBHOOKS_REJECTED
from packages.integration.normalizer import SOURCE_PLATFORM, normalize

logger = get_logger("ingress")

USER_AGENT_PREFIX = "integration-gateway"
META_SOURCES = ("whatsapp", "messenger", "instagram")
SIGNED_SOURCES = ("whatsapp", "messenger", "instagram", "tawkto", "mailchimp")
SIGNATURE_HEADERS = {
    "whatsapp": ("X-Hub-Signature-256", "X-Hub-Signature"),
    "messenger": ("X-Hub-Signature-256", "X-Hub-Signature"),
    "instagram": ("X-Hub-Signature-256", "X-Hub-Signature"),
    "tawkto": ("X-Tawk-Signature",),
    "mailchimp": ("X-Mailchimp-Signature",),
    "webchat": ("X-Webchat-Signature",),
}
TELEGRAM_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
# config key on an integration that identifies the receiving account
TENANT_KEYS = {
    Platform.whatsapp: "phone_number_id",
    Platform.messenger: "page_id",
    Platform.instagram: "instagram_account_id",
}


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """HMAC-SHA256 hex check; a leading ``sha256=`` on the signature is ignored."""
    if not signature or not secret:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), signature.encode())


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for k, v in headers.items():
            if k.lower() == lowered:
                return v
        return ""
    return value


class IngressStage(str, Enum):
    received = "received"
    signature_checked = "signature_checked"
    stored = "stored"
    normalized = "normalized"
    forwarded = "forwarded"
    processed = "processed"
    rejected = "rejected"
    failed = "failed"


class IngressResult(BaseModel):
    source: str
    stage: IngressStage = IngressStage.received
    inbound_id: Optional[str] = None
    message: Optional[NormalizedMessage] = None


class HttpForwarder:
    """Hands normalized messages to the downstream messaging service."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None,
                 version: str = "0.1.0"):
        self.base_url = base_url
        self.timeout = timeout
        self.client = client
        self.user_agent = f"{USER_AGENT_PREFIX}/{version}"

    def forward(self, message: NormalizedMessage) -> None:
        if not self.base_url:
            logger.warning("messaging service url not configured, skipping forward",
                           extra={"platform": message.platform.value, "message_id": message.message_id})
            return
        url = self.base_url.rstrip("/") + "/api/v1/webhooks/inbound"
        headers = {"Content-Type": "application/json", "User-Agent": self.user_agent}
        post = self.client.post if self.client is not None else httpx.post
        try:
            resp = post(url, json=message.forward_body(), headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise ForwardingError(f"forward to messaging service failed: {e}")
        if resp.status_code < 200 or resp.status_code >= 300:
            raise ForwardingError(
                f"messaging service returned status {resp.status_code}",
                {"status_code": resp.status_code, "body": resp.text[:500]},
            )


class WebhookIngress:
    """received -> signature_checked -> stored -> normalized -> forwarded -> processed.

    Storage and the processed flag are best-effort audit writes; a failure
    there is logged and counted but never blocks forwarding. Any other stage
    failing ends the request and is raised to the HTTP layer.
    """

    def __init__(self, settings, inbound_store, forwarder, registry=None, normalize_fn=normalize):
        self.settings = settings
        self.inbound = inbound_store
        self.forwarder = forwarder
        self.registry = registry
        self.normalize = normalize_fn
        self._warned_unsigned = set()

    def verify_challenge(self, source: str, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> str:
        if source not in META_SOURCES:
            raise UnsupportedPlatform(f"{source} does not use challenge verification")
        if mode != "subscribe":
            raise InvalidRequest("hub.mode must be 'subscribe'")
        if not token:
            raise InvalidRequest("hub.verify_token is required")
        expected = self.settings.verify_token_for(source)
        if not expected:
            raise ConfigurationError(f"verify token not configured for {source}")
        if not hmac.compare_digest(token.encode(), expected.encode()):
            raise SignatureInvalid("verify token mismatch")
        return challenge or ""

    def authenticate(self, source: str, body: bytes, headers: Mapping[str, str]) -> None:
        secret = self.settings.secret_for(source)
        if source in SIGNED_SOURCES:
            signature = ""
            for name in SIGNATURE_HEADERS[source]:
                signature = _header(headers, name)
                if signature:
                    break
            if not verify_signature(body, signature, secret):
                raise SignatureInvalid("invalid webhook signature")
            return
        if not secret:
            if source not in self._warned_unsigned:
                self._warned_unsigned.add(source)
                logger.warning("accepting unauthenticated %s webhooks; set %s_WEBHOOK_SECRET to require one",
                               source, source.upper())
            return
        if source == "telegram":
            provided = _header(headers, TELEGRAM_SECRET_HEADER)
            if not provided or not hmac.compare_digest(provided.encode(), secret.encode()):
                raise SignatureInvalid("invalid telegram secret token")
            return
        if not verify_signature(body, _header(headers, SIGNATURE_HEADERS["webchat"][0]), secret):
            raise SignatureInvalid("invalid webhook signature")

    def _enrich(self, message: NormalizedMessage) -> None:
        key = TENANT_KEYS.get(message.platform)
        if self.registry is None or key is None:
            return
        try:
            for integration in self.registry.list_active(message.platform):
                if str(integration.config.get(key) or "") == message.recipient:
                    message.tenant_id = integration.tenant_id
                    message.channel_id = integration.id
                    return
        except Exception:
            logger.exception("tenant lookup failed", extra={"platform": message.platform.value})

    def _reject(self, result: IngressResult, reason: str, stage: IngressStage = IngressStage.rejected) -> None:
        result.stage = stage
        WEBHOOKS_REJECTED.labels(platform=result.source, reason=reason).inc()

    def handle(self, source: str, body: Optional[bytes], headers: Mapping[str, str]) -> IngressResult:
        platform = SOURCE_PLATFORM.get(source)
        if platform is None:
            raise UnsupportedPlatform(f"unknown webhook source {source}")
        result = IngressResult(source=source)
        if body is None:
            self._reject(result, "unreadable")
            raise InvalidRequest("request body could not be read")

        try:
            self.authenticate(source, body, headers)
        except SignatureInvalid:
            self._reject(result, "signature")
            logger.warning("webhook signature rejected", extra={"platform": source})
            raise
        result.stage = IngressStage.signature_checked

        try:
            record = self.inbound.record(platform, body)
            result.inbound_id = record.id
            result.stage = IngressStage.stored
        except PersistenceError:
            AUDIT_PERSISTENCE_FAILURES.labels(table="inbound_messages").inc()
            logger.exception("inbound persist failed", extra={"platform": source})

        try:
            message = self.normalize(source, body)
        except NormalizationError as e:
            self._reject(result, "normalization")
            logger.warning("normalization failed", extra={"platform": e.platform, "field": e.field,
                                                          "inbound_id": result.inbound_id})
            raise
        result.message = message
        result.stage = IngressStage.normalized
        self._enrich(message)

        try:
            self.forwarder.forward(message)
        except ForwardingError:
            self._reject(result, "forwarding", IngressStage.failed)
            logger.exception("forward failed", extra={"platform": source, "inbound_id": result.inbound_id})
            raise
        result.stage = IngressStage.forwarded

        if result.inbound_id:
            try:
                self.inbound.mark_processed(result.inbound_id)
            except (PersistenceError, NotFound):
                AUDIT_PERSISTENCE_FAILURES.labels(table="inbound_messages").inc()
                logger.exception("mark processed failed", extra={"inbound_id": result.inbound_id})
        result.stage = IngressStage.processed
        WEBHOOKS_RECEIVED.labels(platform=source).inc()
        logger.info("webhook processed", extra={"platform": source, "message_id": message.message_id,
                                                "inbound_id": result.inbound_id})
        return result
