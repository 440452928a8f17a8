"""
Proxy router — the Request Gateway's HTTP face.

Every method on /api/{path} is admitted by RequestGateway.handle() and, if
admitted, forwarded to the resource service with the /api prefix stripped.
Upstream status, body and headers are returned verbatim.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response

from taskflow_gateway.auth.dependencies import get_gateway, to_gateway_request
from taskflow_gateway.gateway.request_gateway import RequestGateway

router = APIRouter(tags=["Resources"])

Gateway = Annotated[RequestGateway, Depends(get_gateway)]


@router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    summary="Tasks, comments, files and users (proxied)",
)
async def proxy(path: str, request: Request, gateway: Gateway) -> Response:
    body = await request.body()
    outcome = await gateway.handle(to_gateway_request(request, f"/{path}", body))
    return Response(
        content=outcome.body,
        status_code=outcome.status_code,
        headers=outcome.headers,
    )
