"""
Pydantic v2 schemas for webhook subscription management.

Separation:
  • WebhookSubscriptionCreate  — what the client sends.
  • WebhookSubscriptionUpdate  — only event_types / is_active; extra="forbid"
    rejects attempts to change target_url or secret with 422.
  • WebhookSubscriptionOut     — never includes the secret.
  • WebhookSubscriptionCreated — includes the secret, returned exactly once.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from taskflow_gateway.services.events import EVENT_TYPES


def _check_event_types(value: list[str]) -> list[str]:
    unknown = sorted(set(value) - EVENT_TYPES)
    if unknown:
        raise ValueError(
            f"Unknown event type(s): {', '.join(unknown)}. "
            f"Allowed: {', '.join(sorted(EVENT_TYPES))}."
        )
    return value


# ── Request schemas ─────────────────────────────────────────
class WebhookSubscriptionCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_url: HttpUrl = Field(
        ...,
        examples=["https://hooks.example.com/taskflow"],
        description="Endpoint that receives signed POST notifications.",
    )
    event_types: list[str] = Field(
        ...,
        min_length=1,
        examples=[["task.created", "task.completed"]],
    )
    secret: str | None = Field(
        default=None,
        min_length=16,
        max_length=255,
        description="HMAC signing secret. Generated when omitted.",
    )

    @field_validator("event_types")
    @classmethod
    def _validate_events(cls, value: list[str]) -> list[str]:
        return _check_event_types(value)


class WebhookSubscriptionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event_types: list[str] | None = Field(default=None, min_length=1)
    is_active: bool | None = None

    @field_validator("event_types")
    @classmethod
    def _validate_events(cls, value: list[str] | None) -> list[str] | None:
        return None if value is None else _check_event_types(value)


# ── Response schemas ────────────────────────────────────────
class WebhookSubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    target_url: str
    event_types: list[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class WebhookSubscriptionCreated(WebhookSubscriptionOut):
    secret: str


class WebhookSubscriptionPage(BaseModel):
    items: list[WebhookSubscriptionOut]
    total: int
    limit: int
    offset: int


class WebhookDeliveryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    subscription_id: uuid.UUID
    event_type: str
    status: str
    attempt_count: int
    next_retry_at: datetime | None
    last_error: str | None
    last_status_code: int | None
    request_body: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class WebhookDeliveryPage(BaseModel):
    items: list[WebhookDeliveryOut]
    total: int
    limit: int
    offset: int
