"""Token lifecycle: expiry tracking, warnings and rotation.

``TokenRotationService.scan`` is one pass over integrations close to expiry.
``TokenRotationScheduler`` runs that pass on a fixed interval as a single
cancellable asyncio task. A scan is idempotent: expired channels leave the
active set once deactivated, so running it twice only repeats warnings.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Optional

import httpx
from pydantic import BaseModel

from packages.integration.domain import (
    ChannelIntegration,
    IntegrationStatus,
    Platform,
    TokenState,
    TokenStatus,
    as_naive_utc,
    utcnow,
)
from packages.integration.errors import (
    ConfigurationError,
    ProviderError,
    ProviderUnavailable,
    RotationUnsupported,
    TokenValidationError,
    UnsupportedPlatform,
)
from packages.integration.logs import get_logger
from packages.integration.metrics import TOKEN_ROTATION

logger = get_logger("token_rotation")

NOTIFICATION_STREAM = "nf:notifications"
_META_PLATFORMS = (Platform.whatsapp, Platform.messenger, Platform.instagram)
VALIDATED_PLATFORMS = _META_PLATFORMS + (Platform.telegram,)


class TokenGrant(BaseModel):
    access_token: str
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None


class ScanReport(BaseModel):
    scanned: int = 0
    deactivated: int = 0
    warned: int = 0
    rotated: int = 0
    failed: int = 0


def token_status(integration: ChannelIntegration, now: datetime, warning_days: int) -> TokenStatus:
    status = TokenStatus(
        channel_id=integration.id or "",
        platform=integration.platform,
        tenant_id=integration.tenant_id,
        token_expiry=integration.token_expiry,
        last_rotated=integration.last_rotated,
    )
    expiry = as_naive_utc(integration.token_expiry)
    if expiry is None:
        return status
    remaining = expiry - now
    status.days_until_expiry = int(remaining.total_seconds() // 86400)
    if expiry <= now:
        status.status = TokenState.expired
    elif remaining <= timedelta(days=warning_days):
        status.status = TokenState.expiring_soon
    return status


def _get(client, url, **kwargs) -> httpx.Response:
    get = client.get if client is not None else httpx.get
    try:
        return get(url, timeout=10, **kwargs)
    except httpx.HTTPError as e:
        raise ProviderUnavailable(f"token endpoint unreachable: {e}")


class TokenValidator:
    """Plausibility check for a new token, optionally asking the platform who it is."""

    def __init__(self, settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.client = client

    def validate(self, platform: Platform, token: str) -> None:
        platform = Platform(platform)
        if platform not in VALIDATED_PLATFORMS:
            raise UnsupportedPlatform(f"token validation not supported for {platform.value}")
        if not token or not token.strip():
            raise TokenValidationError(f"{platform.value} token cannot be empty")
        if not self.settings.rotation.validate_remote:
            return
        if platform == Platform.telegram:
            resp = _get(self.client, f"https://api.telegram.org/bot{token}/getMe")
            ok = resp.status_code == 200 and bool(resp.json().get("ok"))
        else:
            resp = _get(self.client, f"https://graph.facebook.com/{self.settings.graph_api_version}/me",
                        params={"access_token": token})
            ok = resp.status_code == 200
        if not ok:
            raise TokenValidationError(f"{platform.value} rejected the token (status {resp.status_code})")


class MetaTokenRefresher:
    """Exchanges the current token for a fresh long-lived one."""

    def __init__(self, settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.client = client

    def refresh(self, integration: ChannelIntegration) -> TokenGrant:
        if not (self.settings.meta_app_id and self.settings.meta_app_secret):
            raise ConfigurationError("META_APP_ID and META_APP_SECRET are required for token exchange")
        resp = _get(
            self.client,
            f"https://graph.facebook.com/{self.settings.graph_api_version}/oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.settings.meta_app_id,
                "client_secret": self.settings.meta_app_secret,
                "fb_exchange_token": integration.access_token,
            },
        )
        if resp.status_code >= 400:
            raise ProviderError(resp.status_code, resp.text[:500])
        data = resp.json()
        expires_at = None
        if data.get("expires_in"):
            expires_at = utcnow() + timedelta(seconds=int(data["expires_in"]))
        return TokenGrant(access_token=data.get("access_token") or "", expires_at=expires_at)


class TokenRefresher:
    def __init__(self, settings, client: Optional[httpx.Client] = None):
        meta = MetaTokenRefresher(settings, client)
        self.flows = {p: meta for p in _META_PLATFORMS}

    def refresh(self, integration: ChannelIntegration) -> TokenGrant:
        flow = self.flows.get(integration.platform)
        if flow is None:
            raise RotationUnsupported(f"no refresh flow for {integration.platform.value}")
        return flow.refresh(integration)


class LogNotifier:
    def token_expiring(self, status: TokenStatus, email: str = "") -> None:
        logger.warning("token expiring soon", extra={
            "channel_id": status.channel_id, "platform": status.platform.value,
            "days_until_expiry": status.days_until_expiry, "notify": email,
        })


class RedisNotifier(LogNotifier):
    def __init__(self, redis, stream: str = NOTIFICATION_STREAM):
        self.redis = redis
        self.stream = stream

    def token_expiring(self, status: TokenStatus, email: str = "") -> None:
        super().token_expiring(status, email)
        try:
            self.redis.xadd(self.stream, {
                "type": "token.expiring",
                "tenant_id": status.tenant_id,
                "channel_id": status.channel_id,
                "platform": status.platform.value,
                "days_until_expiry": str(status.days_until_expiry),
                "token_expiry": status.token_expiry.isoformat() if status.token_expiry else "",
                "email": email or "",
            })
        except Exception:
            logger.exception("redis unavailable when publishing token notification")


class TokenRotationService:
    def __init__(self, registry, policy, notifier, refresher, validator):
        self.registry = registry
        self.policy = policy
        self.notifier = notifier
        self.refresher = refresher
        self.validator = validator

    def scan(self, now: Optional[datetime] = None) -> ScanReport:
        now = now or utcnow()
        report = ScanReport()
        for channel_id in self.registry.list_expiring_ids(now + timedelta(days=self.policy.warning_days)):
            report.scanned += 1
            try:
                outcome = self._process(self.registry.get_by_id(channel_id), now)
            except Exception:
                # one broken channel must not stop the rest of the scan
                report.failed += 1
                TOKEN_ROTATION.labels(outcome="failed").inc()
                logger.exception("token rotation failed", extra={"channel_id": channel_id})
                continue
            if outcome:
                setattr(report, outcome, getattr(report, outcome) + 1)
                TOKEN_ROTATION.labels(outcome=outcome).inc()
        logger.info("token scan finished", extra=report.model_dump())
        return report

    def _process(self, integration: ChannelIntegration, now: datetime) -> Optional[str]:
        status = token_status(integration, now, self.policy.warning_days)
        if status.status == TokenState.expired:
            self.registry.set_status(integration.id, IntegrationStatus.error)
            logger.warning("token expired, channel deactivated",
                           extra={"channel_id": integration.id, "platform": integration.platform.value})
            return "deactivated"
        if status.status != TokenState.expiring_soon:
            return None
        self.notifier.token_expiring(status, self.policy.notification_email)
        if not self.policy.auto_rotation:
            return "warned"
        grant = self.refresher.refresh(integration)
        self._store_grant(integration, grant, now)
        logger.info("token rotated", extra={"channel_id": integration.id, "platform": integration.platform.value})
        return "rotated"

    def _store_grant(self, integration: ChannelIntegration, grant: TokenGrant, now: datetime) -> ChannelIntegration:
        self.validator.validate(integration.platform, grant.access_token)
        return self.registry.update(integration.model_copy(update={
            "access_token": grant.access_token,
            "refresh_token": grant.refresh_token or integration.refresh_token,
            "token_expiry": grant.expires_at,
            "last_rotated": now,
        }))

    def rotate_token(self, channel_id: str, new_token: str, expires_at: Optional[datetime] = None) -> ChannelIntegration:
        """Manual rotation; an errored channel becomes active again with the new token."""
        integration = self.registry.get_by_id(channel_id)
        if integration.status == IntegrationStatus.error:
            integration = integration.model_copy(update={"status": IntegrationStatus.active})
        return self._store_grant(integration, TokenGrant(access_token=new_token, expires_at=expires_at), utcnow())

    def status_for(self, channel_id: str) -> TokenStatus:
        return token_status(self.registry.get_by_id(channel_id), utcnow(), self.policy.warning_days)


class TokenRotationScheduler:
    def __init__(self, service: TokenRotationService, policy):
        self.service = service
        self.policy = policy
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="token-rotation")
        return self._task

    async def run_once(self) -> ScanReport:
        return await asyncio.to_thread(self.service.scan)

    async def _loop(self):
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("token scan crashed")
            await asyncio.sleep(self.policy.rotation_interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
