"""Error envelope shared by every non-2xx response the gateway itself produces."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    code: str = Field(..., examples=["rate_limited"])
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: ErrorDetail


# For `responses=` on route decorators (OpenAPI docs only).
ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: {"model": ErrorResponse, "description": "Missing, invalid, expired or revoked token."},
    429: {"model": ErrorResponse, "description": "Rate limit exceeded (see Retry-After)."},
}
