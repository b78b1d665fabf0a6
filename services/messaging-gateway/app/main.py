import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import jwt
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from redis import Redis

from packages.integration.config import Settings
from packages.integration.db import SessionLocal
from packages.integration.dispatcher import OutboundDispatcher
from packages.integration.domain import (
    ChannelIntegration,
    IntegrationStatus,
    MessageContent,
    Platform,
    Provider,
)
from packages.integration.errors import Forbidden, IntegrationError, NotFound, Unauthorized
from packages.integration.health import HealthService, ServiceClock
from packages.integration.history import MessageHistory
from packages.integration.logs import get_logger
from packages.integration.metrics import render
from packages.integration.providers import ProviderClient, validate_config
from packages.integration.registry import ChannelRegistry, InboundMessageStore, OutboundLogStore
from packages.integration.reminders import ReminderScheduler
from packages.integration.rotation import (
    RedisNotifier,
    TokenRefresher,
    TokenRotationScheduler,
    TokenRotationService,
    TokenValidator,
)
from packages.integration.vault import CredentialVault

settings = Settings.from_env("messaging-gateway")
logger = get_logger("messaging_gateway")
redis = Redis.from_url(settings.redis_url, decode_responses=True)

# No key, no service: tokens are never stored in plaintext
vault = CredentialVault.from_settings(settings)
registry = ChannelRegistry(vault)
outbound_logs = OutboundLogStore()
dispatcher = OutboundDispatcher(registry, outbound_logs, ProviderClient(settings))
history = MessageHistory(InboundMessageStore(), outbound_logs)
rotation = TokenRotationService(
    registry, settings.rotation, RedisNotifier(redis), TokenRefresher(settings), TokenValidator(settings)
)
scheduler = TokenRotationScheduler(rotation, settings.rotation)
reminders = ReminderScheduler()
health = HealthService(settings.service_name, settings.version, ServiceClock(), SessionLocal)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.rotation.enabled:
        scheduler.start()
        logger.info("token rotation scheduler started", extra={"interval": settings.rotation.rotation_interval})
    yield
    await scheduler.stop()
    await reminders.shutdown()


app = FastAPI(title="Integration Gateway Messaging", lifespan=lifespan)
_PUBLIC_PATHS = ("/healthz", "/metrics", "/internal/status")


class Role(str, Enum):
    owner = "owner"
    admin = "admin"
    agent = "agent"


def require_roles(*roles: Role):
    async def checker(request: Request):
        user = getattr(request.state, "user", None)
        if not user:
            raise Unauthorized("unauthorized")
        role = user.get("role")
        allowed = {r.value for r in roles}
        # Owners inherit admin capabilities
        if role == Role.owner.value and Role.admin.value in allowed:
            return user
        if role not in allowed:
            raise Forbidden("forbidden")
        return user
    return Depends(checker)


def _tenant(user: dict) -> str:
    tenant_id = user.get("tenant_id") or user.get("org_id")
    if not tenant_id:
        raise Unauthorized("token has no tenant")
    return tenant_id


@app.middleware("http")
async def jwt_middleware(request: Request, call_next):
    if request.url.path.startswith(_PUBLIC_PATHS):
        return await call_next(request)
    auth = request.headers.get("Authorization")
    if not auth or not auth.startswith("Bearer "):
        return JSONResponse(Unauthorized("unauthorized").to_envelope(), status_code=401)
    token = auth.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except jwt.PyJWTError:
        return JSONResponse(Unauthorized("invalid-token").to_envelope(), status_code=401)
    request.state.user = payload
    return await call_next(request)


@app.exception_handler(IntegrationError)
async def integration_error(request: Request, exc: IntegrationError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


def _ok(data: Any = None, message: str = "success") -> Dict[str, Any]:
    return {"code": "SUCCESS", "message": message, "data": data}


class ChannelCreate(BaseModel):
    platform: Platform
    provider: Provider
    access_token: str = ""
    refresh_token: Optional[str] = None
    webhook_url: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    token_expiry: Optional[datetime] = None


class ChannelUpdate(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    webhook_url: Optional[str] = None
    status: Optional[IntegrationStatus] = None
    config: Optional[Dict[str, Any]] = None
    token_expiry: Optional[datetime] = None


class RotateToken(BaseModel):
    access_token: str
    expires_at: Optional[datetime] = None


class SendMessage(BaseModel):
    channel_id: str
    recipient: str
    content: MessageContent


class Broadcast(BaseModel):
    platforms: List[Platform]
    recipients: List[str]
    content: MessageContent


class ReminderCreate(BaseModel):
    event_id: str
    channel_id: str
    recipient: str
    text: str
    fire_at: datetime


def _load_channel_for_tenant(ch_id: str, tenant_id: str) -> ChannelIntegration:
    ch = registry.get_by_id(ch_id)
    if ch.tenant_id != tenant_id:
        raise NotFound(f"channel integration {ch_id} not found")
    return ch


@app.post("/api/channels")
def create_channel(body: ChannelCreate, user: dict = require_roles(Role.admin)):
    integration = ChannelIntegration(tenant_id=_tenant(user), **body.model_dump())
    validate_config(integration)
    created = registry.create(integration)
    logger.info("channel created", extra={"channel_id": created.id, "platform": created.platform.value,
                                          "tenant_id": created.tenant_id})
    return _ok(created.public(), "channel created")


@app.get("/api/channels")
def list_channels(user: dict = require_roles(Role.admin, Role.agent)):
    return _ok([ch.public() for ch in registry.get_by_tenant(_tenant(user))])


@app.get("/api/channels/{ch_id}")
def get_channel(ch_id: str, user: dict = require_roles(Role.admin, Role.agent)):
    return _ok(_load_channel_for_tenant(ch_id, _tenant(user)).public())


@app.put("/api/channels/{ch_id}")
def update_channel(ch_id: str, body: ChannelUpdate, user: dict = require_roles(Role.admin)):
    ch = _load_channel_for_tenant(ch_id, _tenant(user))
    changed = ch.model_copy(update=body.model_dump(exclude_unset=True))
    validate_config(changed)
    updated = registry.update(changed)
    logger.info("channel updated", extra={"channel_id": ch_id, "fields": sorted(body.model_fields_set)})
    return _ok(updated.public(), "channel updated")


@app.delete("/api/channels/{ch_id}")
def delete_channel(ch_id: str, user: dict = require_roles(Role.admin)):
    _load_channel_for_tenant(ch_id, _tenant(user))
    registry.delete(ch_id)
    logger.info("channel deleted", extra={"channel_id": ch_id})
    return _ok({"id": ch_id}, "channel deleted")


@app.post("/api/channels/{ch_id}/rotate")
def rotate_channel_token(ch_id: str, body: RotateToken, user: dict = require_roles(Role.admin)):
    _load_channel_for_tenant(ch_id, _tenant(user))
    rotated = rotation.rotate_token(ch_id, body.access_token, body.expires_at)
    logger.info("channel token rotated", extra={"channel_id": ch_id})
    return _ok(rotated.public(), "token rotated")


@app.get("/api/channels/{ch_id}/token-status")
def channel_token_status(ch_id: str, user: dict = require_roles(Role.admin, Role.agent)):
    _load_channel_for_tenant(ch_id, _tenant(user))
    return _ok(rotation.status_for(ch_id).model_dump(mode="json"))


@app.post("/api/messages/send")
def send_message(body: SendMessage, user: dict = require_roles(Role.admin, Role.agent)):
    ch = _load_channel_for_tenant(body.channel_id, _tenant(user))
    result = dispatcher.send(ch, body.recipient, body.content)
    log = result.log.model_dump(mode="json")
    if result.error is not None:
        # the failed log is part of the answer so callers can correlate
        envelope = result.error.to_envelope()
        envelope["data"] = {**(envelope.get("data") or {}), "log": log}
        return JSONResponse(status_code=result.error.status_code, content=envelope)
    return _ok(log, "message sent")


@app.post("/api/messages/broadcast")
def broadcast_message(body: Broadcast, user: dict = require_roles(Role.admin)):
    result = dispatcher.broadcast(_tenant(user), body.platforms, body.recipients, body.content)
    return _ok(result.model_dump(mode="json"), "broadcast finished")


@app.get("/api/messages/inbound")
def list_inbound(platform: Optional[Platform] = None, limit: int = 50, offset: int = 0,
                 user: dict = require_roles(Role.admin)):
    # inbound audit rows carry no tenant; operators only
    return _ok(history.inbound(platform, limit=min(max(limit, 1), 200), offset=max(offset, 0)))


@app.get("/api/messages/outbound")
def list_outbound(platform: Optional[Platform] = None, limit: int = 50, offset: int = 0,
                  user: dict = require_roles(Role.admin, Role.agent)):
    logs = history.outbound(platform, limit=min(max(limit, 1), 200), offset=max(offset, 0), tenant_id=_tenant(user))
    return _ok([log.model_dump(mode="json") for log in logs])


@app.get("/api/messages/history")
def chat_history(platform: Platform, user_id: str, limit: int = 100, user: dict = require_roles(Role.admin)):
    msgs = history.chat_history(platform, user_id, limit=min(max(limit, 1), 500))
    return _ok([m.model_dump(mode="json") for m in msgs])


@app.post("/api/reminders")
async def schedule_reminder(body: ReminderCreate, user: dict = require_roles(Role.admin, Role.agent)):
    tenant_id = _tenant(user)
    await asyncio.to_thread(_load_channel_for_tenant, body.channel_id, tenant_id)
    content = MessageContent(type="text", text=body.text)

    async def deliver():
        result = await asyncio.to_thread(dispatcher.send_by_channel_id, body.channel_id, body.recipient, content)
        if result.error is not None:
            logger.error("reminder delivery failed: %s", result.error.message,
                         extra={"event_id": body.event_id, "channel_id": body.channel_id})

    reminder = reminders.schedule(f"{tenant_id}:{body.event_id}", body.fire_at, deliver)
    return _ok({"id": reminder.id, "event_id": body.event_id, "fire_at": reminder.fire_at.isoformat()},
               "reminder scheduled")


@app.delete("/api/reminders/{event_id}")
async def cancel_reminders(event_id: str, user: dict = require_roles(Role.admin, Role.agent)):
    cancelled = reminders.cancel(f"{_tenant(user)}:{event_id}")
    return _ok({"event_id": event_id, "cancelled": cancelled})


@app.get("/internal/status")
async def status():
    """Estado del scheduler de rotación y de los recordatorios pendientes."""
    return {
        "token_rotation": {
            "enabled": settings.rotation.enabled,
            "running": scheduler.running,
            "auto_rotation": settings.rotation.auto_rotation,
            "warning_days": settings.rotation.warning_days,
        },
        "reminders_pending": len(reminders.pending()),
    }


@app.get("/healthz")
async def healthz():
    return await asyncio.to_thread(health.report)


@app.get("/metrics")
async def metrics_prom():
    data, content_type = render()
    return Response(content=data, media_type=content_type)
