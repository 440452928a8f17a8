"""
Error taxonomy for the gateway.

Every client-visible failure is a GatewayError subclass carrying the HTTP
status, a stable machine-readable code, and optional response headers.
main.py renders them as:

    {"error": {"code": "...", "message": "...", "details": {...}}}

Auth and rate-limit errors are raised and resolved inside the gateway, so
the resource handler never sees a rejected request. DeliveryFailure is
internal to the webhook dispatcher and never reaches a client.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for errors rendered as structured JSON responses."""

    status_code: int = 500
    code: str = "internal_error"
    message: str = "Internal server error."

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.message = message or self.message
        self.details = details or {}
        self.headers = dict(headers or {})
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


# ── Authentication ──────────────────────────────────────────
class Unauthorized(GatewayError):
    """Missing or malformed credentials."""

    status_code = 401
    code = "unauthorized"
    message = "Missing or invalid bearer token."

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.headers.setdefault("WWW-Authenticate", "Bearer")


class AuthError(Unauthorized):
    """Raised by TokenStore.validate()."""


class InvalidToken(AuthError):
    code = "invalid_token"
    message = "Bearer token is not recognised."


class ExpiredToken(AuthError):
    code = "token_expired"
    message = "Bearer token has expired."


class RevokedToken(AuthError):
    code = "token_revoked"
    message = "Bearer token has been revoked."


class NotFound(GatewayError):
    status_code = 404
    code = "not_found"
    message = "Resource not found."


class Conflict(GatewayError):
    status_code = 409
    code = "conflict"
    message = "The resource is not in a state that allows this operation."


# ── Admission ───────────────────────────────────────────────
class RateLimited(GatewayError):
    """Admission denied; carries a Retry-After hint in seconds."""

    status_code = 429
    code = "rate_limited"
    message = "Rate limit exceeded. Please try again later."

    def __init__(self, retry_after: int, *, scope: str, limit: int) -> None:
        super().__init__(
            details={"scope": scope, "limit": limit, "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after
        self.scope = scope


# ── Upstream ────────────────────────────────────────────────
class UpstreamUnavailable(GatewayError):
    status_code = 502
    code = "upstream_unavailable"
    message = "The resource service is temporarily unavailable."


# ── Webhooks ────────────────────────────────────────────────
class DeliveryFailure(Exception):
    """One failed webhook attempt (non-2xx or transport error)."""

    def __init__(self, reason: str, *, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
