"""
Auth router — token lifecycle.

POST /auth/login       public (IP-limited); credentials are checked by the
                       resource service, the gateway issues the token.
POST /auth/logout      revoke the presented token.
POST /auth/logout-all  revoke every token of the caller.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status

from taskflow_gateway.auth.dependencies import (
    Caller,
    PublicAdmission,
    get_gateway,
    get_token_store,
)
from taskflow_gateway.core.errors import UpstreamUnavailable
from taskflow_gateway.gateway.request_gateway import RequestGateway
from taskflow_gateway.schemas.auth import LogoutAllResponse, TokenResponse
from taskflow_gateway.schemas.errors import ERROR_RESPONSES
from taskflow_gateway.services.token_store import TokenStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Auth"])

Gateway = Annotated[RequestGateway, Depends(get_gateway)]
Tokens = Annotated[TokenStore, Depends(get_token_store)]

LOGIN_UPSTREAM_PATH = "/auth/login"


@router.post(
    "/login",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Exchange credentials for a bearer token",
)
async def login(
    request: Request,
    admission: PublicAdmission,
    gateway: Gateway,
) -> TokenResponse | Response:
    """
    1. Forward the raw credential body to the resource service.
    2. Non-2xx → passed through verbatim (e.g. 401 bad password).
    3. 2xx with {user_id} → issue a token and return it once.
    """
    body = await request.body()
    result = await gateway.resource_handler.handle(
        "POST",
        LOGIN_UPSTREAM_PATH,
        None,
        body,
        content_type=request.headers.get("content-type"),
    )
    if not result.ok:
        return Response(
            content=result.body,
            status_code=result.status_code,
            headers={**result.headers, **admission.rate_limit_headers()},
        )

    data = result.json()
    user_id = data.get("user_id") if isinstance(data, dict) else None
    if user_id is None:
        logger.error("Login upstream returned 2xx without user_id")
        raise UpstreamUnavailable()

    issued = await gateway.token_store.issue(str(user_id))
    return TokenResponse(
        access_token=issued.token,
        expires_at=issued.expires_at,
        user_id=issued.user_id,
    )


@router.post(
    "/logout",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES,
    summary="Revoke the presented token",
)
async def logout(caller: Caller, tokens: Tokens) -> Response:
    await tokens.revoke(caller.token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/logout-all",
    response_model=LogoutAllResponse,
    responses=ERROR_RESPONSES,
    summary="Revoke every token of the caller",
)
async def logout_all(caller: Caller, tokens: Tokens) -> LogoutAllResponse:
    revoked = await tokens.revoke_all_for_user(caller.user_id)
    return LogoutAllResponse(revoked=revoked)
