"""
Resource handler — the CRUD service behind the gateway.

Tasks, comments, files and users live in an upstream service; the gateway
only needs a synchronous-looking call:

    handle(method, path, user_id, body) -> HandlerResult

HttpResourceHandler forwards the call over HTTP with httpx, passing the
authenticated user as X-User-Id. The result (status, body, headers) is
propagated verbatim; the gateway never interprets the payload except to
build webhook event data.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from taskflow_gateway.core.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

# Hop-by-hop / transport headers that must not be replayed to the client.
_DROP_HEADERS = frozenset({
    "connection",
    "content-encoding",
    "content-length",
    "keep-alive",
    "transfer-encoding",
    "server",
    "date",
})


@dataclass(frozen=True, slots=True)
class HandlerResult:
    status_code: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Decoded JSON body, or None when the body is empty or not JSON."""
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError:
            return None


class ResourceHandler(Protocol):
    async def handle(
        self,
        method: str,
        path: str,
        user_id: str | None,
        body: bytes,
        *,
        content_type: str | None = None,
    ) -> HandlerResult: ...


class HttpResourceHandler:
    """Proxy calls to the upstream CRUD service."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def handle(
        self,
        method: str,
        path: str,
        user_id: str | None,
        body: bytes,
        *,
        content_type: str | None = None,
    ) -> HandlerResult:
        headers: dict[str, str] = {}
        if content_type:
            headers["Content-Type"] = content_type
        if user_id is not None:
            headers["X-User-Id"] = user_id

        try:
            response = await self._client.request(
                method,
                path,
                content=body or None,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("Upstream %s %s failed: %s", method, path, exc)
            raise UpstreamUnavailable() from exc

        return HandlerResult(
            status_code=response.status_code,
            body=response.content,
            headers={
                k: v for k, v in response.headers.items() if k.lower() not in _DROP_HEADERS
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()
