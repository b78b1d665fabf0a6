import os
from typing import Dict, Optional

from pydantic import BaseModel, Field

# Webhook origins; tawkto and webchat both end up as the webchat platform.
WEBHOOK_SOURCES = ("whatsapp", "messenger", "instagram", "telegram", "webchat", "tawkto", "mailchimp")


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class RotationPolicy(BaseModel):
    enabled: bool = False
    rotation_interval: float = 24 * 3600  # seconds
    warning_days: int = 7
    auto_rotation: bool = False
    notification_email: str = ""
    validate_remote: bool = False


class Settings(BaseModel):
    service_name: str = "integration-gateway"
    version: str = "0.1.0"
    log_level: str = "INFO"
    redis_url: str = "redis://redis:6379/0"
    encryption_key: str = ""
    messaging_service_url: str = "http://localhost:8081"
    webhook_secrets: Dict[str, str] = Field(default_factory=dict)
    verify_tokens: Dict[str, str] = Field(default_factory=dict)
    graph_api_version: str = "v20.0"
    provider_timeout: float = 30.0
    forward_timeout: float = 10.0
    jwt_secret: str = "devsecret"
    meta_app_id: str = ""
    meta_app_secret: str = ""
    rotation: RotationPolicy = Field(default_factory=RotationPolicy)

    @classmethod
    def from_env(cls, service_name: Optional[str] = None) -> "Settings":
        secrets = {}
        tokens = {}
        for source in WEBHOOK_SOURCES:
            secrets[source] = os.getenv(f"{source.upper()}_WEBHOOK_SECRET", "")
            tokens[source] = os.getenv(f"{source.upper()}_VERIFY_TOKEN", "")
        # Meta signs with the app secret; older deployments only set that one
        if not secrets["whatsapp"]:
            secrets["whatsapp"] = os.getenv("WHATSAPP_APP_SECRET", "")
        return cls(
            service_name=service_name or os.getenv("SERVICE_NAME", "integration-gateway"),
            version=os.getenv("SERVICE_VERSION", "0.1.0"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            encryption_key=os.getenv("ENCRYPTION_KEY", ""),
            messaging_service_url=os.getenv("MESSAGING_SERVICE_URL", "http://localhost:8081"),
            webhook_secrets=secrets,
            verify_tokens=tokens,
            graph_api_version=os.getenv("GRAPH_API_VERSION", "v20.0"),
            provider_timeout=_float("PROVIDER_TIMEOUT_SECONDS", 30.0),
            forward_timeout=_float("FORWARD_TIMEOUT_SECONDS", 10.0),
            jwt_secret=os.getenv("JWT_SECRET", "devsecret"),
            meta_app_id=os.getenv("META_APP_ID", ""),
            meta_app_secret=os.getenv("META_APP_SECRET", ""),
            rotation=RotationPolicy(
                enabled=_bool("TOKEN_ROTATION_ENABLED", False),
                rotation_interval=_float("TOKEN_ROTATION_INTERVAL_SECONDS", 24 * 3600),
                warning_days=_int("TOKEN_WARNING_DAYS", 7),
                auto_rotation=_bool("TOKEN_AUTO_ROTATION", False),
                notification_email=os.getenv("TOKEN_NOTIFICATION_EMAIL", ""),
                validate_remote=_bool("TOKEN_VALIDATE_REMOTE", False),
            ),
        )

    def secret_for(self, source: str) -> str:
        return self.webhook_secrets.get(source, "")

    def verify_token_for(self, source: str) -> str:
        return self.verify_tokens.get(source, "")
