"""
Webhook models — subscriptions and the delivery outbox.

WebhookSubscription:
  • target_url and secret are fixed at creation; only event_types and
    is_active are mutable.
  • event_types is a JSON array of event names ("task.created", ...).

WebhookDelivery:
  • One row per (domain event × matching subscription).
  • Status lifecycle: pending → delivered
                      pending → retrying → ... → failed
  • next_retry_at drives the dispatcher's due-row scan.
"""

import uuid
import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from taskflow_gateway.core.database import Base

STATUS_PENDING = "pending"
STATUS_RETRYING = "retrying"
STATUS_DELIVERED = "delivered"
STATUS_FAILED = "failed"

DUE_STATUSES = (STATUS_PENDING, STATUS_RETRYING)


class WebhookSubscription(Base):
    """A subscriber endpoint and the event types it wants."""

    __tablename__ = "webhook_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    owner_user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    target_url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    secret: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    event_types: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookSubscription id={self.id!s:.8} url={self.target_url!r} "
            f"events={self.event_types}>"
        )


class WebhookDelivery(Base):
    """One outbound notification and its retry bookkeeping."""

    __tablename__ = "webhook_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("webhook_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    request_body: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=STATUS_PENDING,
    )
    attempt_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    next_retry_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    last_status_code: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookDelivery id={self.id!s:.8} event={self.event_type} "
            f"status={self.status} attempts={self.attempt_count}>"
        )
