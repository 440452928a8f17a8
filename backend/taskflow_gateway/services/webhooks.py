"""
Webhook subscription management.

All functions take a request-scoped AsyncSession (the router owns its
lifecycle) and are scoped to the owning user: a subscription owned by
someone else behaves exactly like a missing one (404).

target_url and secret are fixed at creation. Only event_types and the
active flag can change afterwards.
"""

import datetime
import logging
import secrets
import uuid

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow_gateway.core.database import utcnow
from taskflow_gateway.core.errors import Conflict, NotFound
from taskflow_gateway.models.webhook import (
    DUE_STATUSES,
    STATUS_PENDING,
    WebhookDelivery,
    WebhookSubscription,
)

logger = logging.getLogger(__name__)


def generate_secret() -> str:
    return f"whsec_{secrets.token_hex(24)}"


async def create_subscription(
    session: AsyncSession,
    *,
    owner_user_id: str,
    target_url: str,
    event_types: list[str],
    secret: str | None = None,
) -> WebhookSubscription:
    now = utcnow()
    subscription = WebhookSubscription(
        owner_user_id=owner_user_id,
        target_url=target_url,
        secret=secret or generate_secret(),
        event_types=sorted(set(event_types)),
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    session.add(subscription)
    await session.commit()
    await session.refresh(subscription)
    logger.info(
        "Created webhook subscription %s for user %s → %s",
        subscription.id, owner_user_id, target_url,
    )
    return subscription


async def get_subscription(
    session: AsyncSession,
    owner_user_id: str,
    subscription_id: uuid.UUID,
) -> WebhookSubscription:
    subscription = await session.get(WebhookSubscription, subscription_id)
    if subscription is None or subscription.owner_user_id != owner_user_id:
        raise NotFound("Webhook subscription not found.")
    return subscription


async def list_subscriptions(
    session: AsyncSession,
    owner_user_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[WebhookSubscription], int]:
    total = await session.scalar(
        select(func.count())
        .select_from(WebhookSubscription)
        .where(WebhookSubscription.owner_user_id == owner_user_id)
    )
    result = await session.execute(
        select(WebhookSubscription)
        .where(WebhookSubscription.owner_user_id == owner_user_id)
        .order_by(WebhookSubscription.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars()), int(total or 0)


async def update_subscription(
    session: AsyncSession,
    owner_user_id: str,
    subscription_id: uuid.UUID,
    *,
    event_types: list[str] | None = None,
    is_active: bool | None = None,
) -> WebhookSubscription:
    subscription = await get_subscription(session, owner_user_id, subscription_id)
    if event_types is not None:
        subscription.event_types = sorted(set(event_types))
    if is_active is not None:
        subscription.is_active = is_active
    subscription.updated_at = utcnow()
    await session.commit()
    await session.refresh(subscription)
    return subscription


async def delete_subscription(
    session: AsyncSession,
    owner_user_id: str,
    subscription_id: uuid.UUID,
) -> None:
    subscription = await get_subscription(session, owner_user_id, subscription_id)
    # Explicit so SQLite (no FK enforcement by default) matches Postgres CASCADE.
    await session.execute(
        delete(WebhookDelivery).where(WebhookDelivery.subscription_id == subscription.id)
    )
    await session.delete(subscription)
    await session.commit()
    logger.info("Deleted webhook subscription %s", subscription_id)


async def list_deliveries(
    session: AsyncSession,
    owner_user_id: str,
    subscription_id: uuid.UUID,
    *,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[WebhookDelivery], int]:
    await get_subscription(session, owner_user_id, subscription_id)

    filters = [WebhookDelivery.subscription_id == subscription_id]
    if status is not None:
        filters.append(WebhookDelivery.status == status)

    total = await session.scalar(
        select(func.count()).select_from(WebhookDelivery).where(*filters)
    )
    result = await session.execute(
        select(WebhookDelivery)
        .where(*filters)
        .order_by(WebhookDelivery.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars()), int(total or 0)


async def redeliver(
    session: AsyncSession,
    owner_user_id: str,
    subscription_id: uuid.UUID,
    delivery_id: uuid.UUID,
    *,
    now: datetime.datetime | None = None,
) -> WebhookDelivery:
    """Reset a finished delivery to pending with a fresh attempt budget."""
    await get_subscription(session, owner_user_id, subscription_id)
    delivery = await session.get(WebhookDelivery, delivery_id)
    if delivery is None or delivery.subscription_id != subscription_id:
        raise NotFound("Webhook delivery not found.")
    if delivery.status in DUE_STATUSES:
        raise Conflict("Delivery is still scheduled.", details={"status": delivery.status})

    now = now or utcnow()
    delivery.status = STATUS_PENDING
    delivery.attempt_count = 0
    delivery.next_retry_at = now
    delivery.last_error = None
    delivery.last_status_code = None
    delivery.updated_at = now
    await session.commit()
    await session.refresh(delivery)
    logger.info("Delivery %s re-queued by user %s", delivery_id, owner_user_id)
    return delivery
