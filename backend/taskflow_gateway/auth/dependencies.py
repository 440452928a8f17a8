"""
FastAPI dependencies that run gateway admission for first-party routes.

Flow (delegated to RequestGateway.admit):
  1. Per-IP rate limit
  2. Extract Bearer token from Authorization header
  3. TokenStore.validate → owner user id
  4. Per-token rate limit
  5. Return Admission (principal + rate-limit decisions)

Failures raise GatewayError subclasses; main.py renders them as the
standard {"error": {...}} envelope. Raw tokens are NEVER logged.

Usage in routers:
    Caller = Annotated[Principal, Depends(get_current_principal)]
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request, Response

from taskflow_gateway.core.config import settings
from taskflow_gateway.gateway.request_gateway import (
    Admission,
    GatewayRequest,
    Principal,
    RequestGateway,
)
from taskflow_gateway.services.token_store import TokenStore
from taskflow_gateway.services.webhook_dispatcher import WebhookDispatcher


def get_gateway(request: Request) -> RequestGateway:
    return request.app.state.gateway


def get_token_store(request: Request) -> TokenStore:
    return request.app.state.gateway.token_store


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher


def client_ip(request: Request) -> str:
    """
    Resolve the caller's IP.

    X-Forwarded-For is honoured only when TRUST_FORWARDED_FOR is set —
    otherwise any client could pick its own rate-limit bucket.
    """
    if settings.TRUST_FORWARDED_FOR:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def to_gateway_request(request: Request, path: str, body: bytes = b"") -> GatewayRequest:
    query = request.url.query
    return GatewayRequest(
        method=request.method,
        path=f"{path}?{query}" if query else path,
        client_ip=client_ip(request),
        authorization=request.headers.get("authorization"),
        body=body,
        content_type=request.headers.get("content-type"),
    )


async def admit_request(
    request: Request,
    response: Response,
    gateway: RequestGateway = Depends(get_gateway),
) -> Admission:
    """Admission for protected first-party routes (token + both limits)."""
    admission = await gateway.admit(
        to_gateway_request(request, request.url.path), public=False,
    )
    response.headers.update(admission.rate_limit_headers())
    return admission


async def admit_public_request(
    request: Request,
    response: Response,
    gateway: RequestGateway = Depends(get_gateway),
) -> Admission:
    """Admission for unauthenticated routes such as login (IP limit only)."""
    admission = await gateway.admit(
        to_gateway_request(request, request.url.path), public=True,
    )
    response.headers.update(admission.rate_limit_headers())
    return admission


async def get_current_principal(
    admission: Admission = Depends(admit_request),
) -> Principal:
    assert admission.principal is not None
    return admission.principal


Caller = Annotated[Principal, Depends(get_current_principal)]
PublicAdmission = Annotated[Admission, Depends(admit_public_request)]
