"""
Request gateway — admission control in front of the resource handler.

Per-request state machine:

    RECEIVED → AUTHENTICATED → RATE_CHECKED → ROUTED → COMPLETED
        └──────────┴───────────────┴──→ REJECTED(reason)

  RECEIVED       per-IP limiter (429), then parse Authorization;
                 missing/non-Bearer on a protected route → 401. Floods
                 without a usable token never reach the token store.
  AUTHENTICATED  TokenStore.validate(); Invalid/Expired/Revoked → 401.
  RATE_CHECKED   per-token limiter → 429 with Retry-After.
  ROUTED         ResourceHandler.handle(); result propagated verbatim.
  COMPLETED      2xx mutations on tasks/comments/files publish a domain
                 event to the webhook dispatcher. Failures publish nothing.

Public paths (e.g. /auth/login) skip authentication and are limited by IP
only. This module knows nothing about FastAPI; main.py adapts HTTP to
GatewayRequest / GatewayResponse.
"""

from __future__ import annotations

import enum
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from taskflow_gateway.auth.hashing import display_prefix, hash_token
from taskflow_gateway.core.config import settings
from taskflow_gateway.core.errors import (
    GatewayError,
    RateLimited,
    Unauthorized,
    UpstreamUnavailable,
)
from taskflow_gateway.services.events import DomainEvent, event_type_for
from taskflow_gateway.services.rate_limiter import RateDecision, RateLimiter
from taskflow_gateway.services.resource_handler import HandlerResult, ResourceHandler
from taskflow_gateway.services.token_store import TokenStore

logger = logging.getLogger(__name__)


class RequestState(str, enum.Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    RATE_CHECKED = "rate_checked"
    ROUTED = "routed"
    COMPLETED = "completed"
    REJECTED = "rejected"


class EventPublisher(Protocol):
    def publish(self, event: DomainEvent) -> bool: ...


@dataclass(slots=True)
class GatewayRequest:
    method: str
    path: str
    client_ip: str
    authorization: str | None = None
    body: bytes = b""
    content_type: str | None = None

    @property
    def route(self) -> str:
        """Path without the query string."""
        return self.path.split("?", 1)[0]


@dataclass(frozen=True, slots=True)
class Principal:
    """The authenticated caller. `token` stays in memory only."""

    user_id: str
    token: str

    @property
    def token_key(self) -> str:
        return hash_token(self.token)


@dataclass(slots=True)
class Admission:
    principal: Principal | None
    ip_decision: RateDecision
    token_decision: RateDecision | None = None

    def rate_limit_headers(self) -> dict[str, str]:
        decision = self.token_decision or self.ip_decision
        return {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(decision.reset_after),
        }


@dataclass(slots=True)
class GatewayResponse:
    status_code: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    state: RequestState = RequestState.COMPLETED
    reason: str | None = None
    event_type: str | None = None


def parse_bearer(authorization: str | None) -> str | None:
    """Extract the token from 'Bearer <token>'; None if absent or malformed."""
    if not authorization:
        return None
    parts = authorization.split(" ", maxsplit=1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


class RequestGateway:
    def __init__(
        self,
        token_store: TokenStore,
        resource_handler: ResourceHandler,
        publisher: EventPublisher,
        *,
        ip_limiter: RateLimiter | None = None,
        token_limiter: RateLimiter | None = None,
        ip_limit: int = settings.IP_RATE_LIMIT,
        ip_window_seconds: int = settings.IP_RATE_WINDOW_SECONDS,
        token_limit: int = settings.TOKEN_RATE_LIMIT,
        token_window_seconds: int = settings.TOKEN_RATE_WINDOW_SECONDS,
        public_paths: Iterable[str] = tuple(settings.PUBLIC_PATHS),
    ) -> None:
        self.token_store = token_store
        self.resource_handler = resource_handler
        self.publisher = publisher
        # Explicit None checks: an empty limiter has len() == 0 and is falsy.
        self.ip_limiter = ip_limiter if ip_limiter is not None else RateLimiter("ip")
        self.token_limiter = token_limiter if token_limiter is not None else RateLimiter("token")
        self._ip_limit = ip_limit
        self._ip_window = ip_window_seconds
        self._token_limit = token_limit
        self._token_window = token_window_seconds
        self._public_paths = frozenset(p.rstrip("/") or "/" for p in public_paths)

    def is_public(self, path: str) -> bool:
        route = path.split("?", 1)[0].rstrip("/") or "/"
        return route in self._public_paths

    # ── Admission ───────────────────────────────────────────
    def _check_ip(self, request: GatewayRequest) -> RateDecision:
        decision = self.ip_limiter.check_and_increment(
            request.client_ip, self._ip_limit, self._ip_window,
        )
        if not decision.allowed:
            raise RateLimited(decision.retry_after, scope="ip", limit=self._ip_limit)
        return decision

    async def admit(self, request: GatewayRequest, *, public: bool | None = None) -> Admission:
        """
        Run the RECEIVED → AUTHENTICATED → RATE_CHECKED gates.

        Raises a GatewayError subclass at the first gate that rejects.
        """
        if public is None:
            public = self.is_public(request.path)

        # ── RECEIVED ────────────────────────────────────────
        # IP budget is spent before any credential check, so header-less
        # and bad-token floods are throttled alike.
        ip_decision = self._check_ip(request)
        raw_token = None if public else parse_bearer(request.authorization)
        if not public and raw_token is None:
            raise Unauthorized()

        if public:
            return Admission(principal=None, ip_decision=ip_decision)

        # ── AUTHENTICATED ───────────────────────────────────
        assert raw_token is not None
        user_id = await self.token_store.validate(raw_token)
        principal = Principal(user_id=user_id, token=raw_token)

        # ── RATE_CHECKED ────────────────────────────────────
        token_decision = self.token_limiter.check_and_increment(
            principal.token_key, self._token_limit, self._token_window,
        )
        if not token_decision.allowed:
            logger.info(
                "Token %s… over limit (%d/%ds)",
                display_prefix(raw_token), self._token_limit, self._token_window,
            )
            raise RateLimited(token_decision.retry_after, scope="token", limit=self._token_limit)

        return Admission(
            principal=principal,
            ip_decision=ip_decision,
            token_decision=token_decision,
        )

    # ── Full pipeline ───────────────────────────────────────
    async def handle(self, request: GatewayRequest) -> GatewayResponse:
        try:
            admission = await self.admit(request)
        except GatewayError as exc:
            return self.reject(request, exc)

        # ── ROUTED ──────────────────────────────────────────
        user_id = admission.principal.user_id if admission.principal else None
        try:
            result = await self.resource_handler.handle(
                request.method,
                request.path,
                user_id,
                request.body,
                content_type=request.content_type,
            )
        except GatewayError as exc:
            return self.reject(request, exc)
        except Exception:
            logger.exception("Resource handler crashed on %s %s", request.method, request.route)
            return self.reject(request, UpstreamUnavailable())

        headers = {**result.headers, **admission.rate_limit_headers()}
        if not result.ok:
            # Non-2xx from upstream: passed through verbatim, no event.
            logger.info(
                "%s %s → upstream %d", request.method, request.route, result.status_code,
            )
            return GatewayResponse(
                status_code=result.status_code,
                body=result.body,
                headers=headers,
                reason="upstream_failure",
            )

        # ── COMPLETED ───────────────────────────────────────
        event_type = self._emit(request, result, user_id)
        return GatewayResponse(
            status_code=result.status_code,
            body=result.body,
            headers=headers,
            event_type=event_type,
        )

    def _emit(
        self,
        request: GatewayRequest,
        result: HandlerResult,
        user_id: str | None,
    ) -> str | None:
        request_body = None
        if request.body:
            try:
                request_body = json.loads(request.body)
            except ValueError:
                request_body = None

        event_type = event_type_for(request.method, request.route, request_body)
        if event_type is None:
            return None

        data = result.json()
        if data is None:
            data = {"path": request.route}
        try:
            self.publisher.publish(DomainEvent(type=event_type, data=data, actor_user_id=user_id))
        except Exception:
            # Webhook problems must never fail the request that produced the event.
            logger.exception("Failed to publish %s event", event_type)
        return event_type

    def reject(self, request: GatewayRequest, exc: GatewayError) -> GatewayResponse:
        logger.info(
            "Rejected %s %s from %s: %s", request.method, request.route, request.client_ip, exc.code,
        )
        return GatewayResponse(
            status_code=exc.status_code,
            body=json.dumps(exc.to_body()).encode("utf-8"),
            headers={"Content-Type": "application/json", **exc.headers},
            state=RequestState.REJECTED,
            reason=exc.code,
        )
