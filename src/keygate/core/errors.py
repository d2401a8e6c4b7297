"""
Failure taxonomy for the gateway.

Every error carries the HTTP status and the stable machine-readable ``code``
returned to clients. Messages are safe to show; storage details never are.
"""

from typing import Any


class GatewayError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    message: str = "Internal error"

    def __init__(self, message: str | None = None, *, headers: dict[str, str] | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.headers = headers or {}

    def to_body(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class MissingCredential(GatewayError):
    status_code = 401
    code = "MISSING_API_KEY"
    message = "API key is required"


class InvalidCredential(GatewayError):
    status_code = 401
    code = "INVALID_API_KEY"
    message = "Invalid API key"


class InactiveKey(GatewayError):
    status_code = 403
    code = "INACTIVE_API_KEY"
    message = "API key is inactive"


class ExpiredKey(GatewayError):
    status_code = 403
    code = "EXPIRED_API_KEY"
    message = "API key has expired"


class QuotaExceeded(GatewayError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    message = "Rate limit exceeded"

    def __init__(self, *, api_key_id, retry_after: int, headers: dict[str, str] | None = None):
        super().__init__(headers=headers)
        self.api_key_id = api_key_id
        self.retry_after = retry_after
        self.headers.setdefault("Retry-After", str(retry_after))

    def to_body(self) -> dict[str, Any]:
        body = super().to_body()
        body["retryAfter"] = self.retry_after
        return body


class NotFound(GatewayError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Not found"


class ValidationError(GatewayError):
    status_code = 422
    code = "VALIDATION_ERROR"
    message = "Invalid input"


class DuplicateHash(GatewayError):
    status_code = 500
    code = "KEY_GENERATION_COLLISION"
    message = "Key generation collision"


class StorageUnavailable(GatewayError):
    # fail closed: an outage must not let revoked keys through
    status_code = 503
    code = "STORAGE_UNAVAILABLE"
    message = "Service temporarily unavailable"


class AdminUnauthorized(GatewayError):
    status_code = 401
    code = "ADMIN_UNAUTHORIZED"
    message = "Admin token is missing or invalid"
