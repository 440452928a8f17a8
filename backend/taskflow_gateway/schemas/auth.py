"""Pydantic v2 schemas for the /auth endpoints."""

from __future__ import annotations

import datetime

from pydantic import BaseModel, Field


class TokenResponse(BaseModel):
    """Returned once by POST /auth/login. The raw token is never shown again."""

    access_token: str = Field(..., description="Opaque bearer token.")
    token_type: str = Field(default="bearer")
    expires_at: datetime.datetime
    user_id: str


class LogoutAllResponse(BaseModel):
    revoked: int = Field(..., ge=0, description="Number of tokens revoked.")
