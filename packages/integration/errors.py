"""Error taxonomy shared by the gateway services.

Every error carries a stable ``code`` and the HTTP ``status_code`` the
services answer with; ``to_envelope()`` renders the ``{code, message, data}``
body used by both FastAPI apps.
"""
from typing import Any, Dict, Optional


class IntegrationError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "", data: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.data = data

    def to_envelope(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "data": self.data}


class InvalidRequest(IntegrationError):
    code = "INVALID_REQUEST"
    status_code = 400


class Unauthorized(IntegrationError):
    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(IntegrationError):
    code = "FORBIDDEN"
    status_code = 403


class SignatureInvalid(Forbidden):
    pass


class NotFound(IntegrationError):
    code = "NOT_FOUND"
    status_code = 404


class ChannelInactive(IntegrationError):
    code = "CHANNEL_INACTIVE"
    status_code = 409


class NormalizationError(IntegrationError):
    code = "NORMALIZATION_ERROR"
    status_code = 422

    def __init__(self, platform: str, field: str, detail: str = ""):
        msg = f"{platform}: missing or invalid field '{field}'"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg, {"platform": platform, "field": field})
        self.platform = platform
        self.field = field


class UnsupportedPlatform(IntegrationError):
    code = "UNSUPPORTED_PLATFORM"
    status_code = 400


class ProviderError(IntegrationError):
    """Provider answered with an HTTP status >= 400."""

    code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(self, provider_status: int, body: Any):
        super().__init__(
            f"provider returned status {provider_status}",
            {"status_code": provider_status, "body": body},
        )
        self.provider_status = provider_status
        self.body = body


class ProviderUnavailable(IntegrationError):
    """Timeout or transport failure talking to a provider. Safe to retry."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    retryable = True


class ForwardingError(IntegrationError):
    code = "FORWARDING_ERROR"
    status_code = 502


class PersistenceError(IntegrationError):
    code = "INTERNAL_ERROR"
    status_code = 500


class DecryptionError(IntegrationError):
    code = "DECRYPTION_ERROR"
    status_code = 500


class ConfigurationError(IntegrationError):
    code = "CONFIGURATION_ERROR"
    status_code = 500


class InvalidKeyLength(ConfigurationError):
    pass


class TokenValidationError(IntegrationError):
    code = "TOKEN_INVALID"
    status_code = 422


class RotationUnsupported(IntegrationError):
    code = "ROTATION_UNSUPPORTED"
    status_code = 400
