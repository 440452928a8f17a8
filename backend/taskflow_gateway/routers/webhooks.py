"""
Webhook subscription router.

POST   /webhooks                                       create (secret returned once)
GET    /webhooks                                       list own subscriptions
GET    /webhooks/{id}                                  get one
PATCH  /webhooks/{id}                                  change event_types / is_active
DELETE /webhooks/{id}                                  delete (and its deliveries)
GET    /webhooks/{id}/deliveries                       delivery log, filter by status
POST   /webhooks/{id}/deliveries/{delivery_id}/redeliver

Every route goes through the same auth + rate-limit admission as the
proxied API.
"""

import uuid
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow_gateway.auth.dependencies import Caller
from taskflow_gateway.core.database import get_db_session
from taskflow_gateway.schemas.errors import ERROR_RESPONSES
from taskflow_gateway.schemas.webhook import (
    WebhookDeliveryOut,
    WebhookDeliveryPage,
    WebhookSubscriptionCreate,
    WebhookSubscriptionCreated,
    WebhookSubscriptionOut,
    WebhookSubscriptionPage,
    WebhookSubscriptionUpdate,
)
from taskflow_gateway.services import webhooks

router = APIRouter(tags=["Webhooks"], responses=ERROR_RESPONSES)

DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Limit = Annotated[int, Query(ge=1, le=200)]
Offset = Annotated[int, Query(ge=0)]


@router.post(
    "",
    response_model=WebhookSubscriptionCreated,
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook subscription",
)
async def create_subscription(
    payload: WebhookSubscriptionCreate,
    caller: Caller,
    session: DbSession,
) -> WebhookSubscriptionCreated:
    subscription = await webhooks.create_subscription(
        session,
        owner_user_id=caller.user_id,
        target_url=str(payload.target_url),
        event_types=payload.event_types,
        secret=payload.secret,
    )
    return WebhookSubscriptionCreated.model_validate(subscription)


@router.get(
    "",
    response_model=WebhookSubscriptionPage,
    summary="List your webhook subscriptions",
)
async def list_subscriptions(
    caller: Caller,
    session: DbSession,
    limit: Limit = 50,
    offset: Offset = 0,
) -> WebhookSubscriptionPage:
    items, total = await webhooks.list_subscriptions(
        session, caller.user_id, limit=limit, offset=offset,
    )
    return WebhookSubscriptionPage(
        items=[WebhookSubscriptionOut.model_validate(s) for s in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{subscription_id}",
    response_model=WebhookSubscriptionOut,
    summary="Get one webhook subscription",
)
async def get_subscription(
    subscription_id: uuid.UUID,
    caller: Caller,
    session: DbSession,
) -> WebhookSubscriptionOut:
    subscription = await webhooks.get_subscription(session, caller.user_id, subscription_id)
    return WebhookSubscriptionOut.model_validate(subscription)


@router.patch(
    "/{subscription_id}",
    response_model=WebhookSubscriptionOut,
    summary="Change subscribed event types or pause a subscription",
    description="target_url and secret are immutable; sending them is a 422.",
)
async def update_subscription(
    subscription_id: uuid.UUID,
    payload: WebhookSubscriptionUpdate,
    caller: Caller,
    session: DbSession,
) -> WebhookSubscriptionOut:
    subscription = await webhooks.update_subscription(
        session,
        caller.user_id,
        subscription_id,
        event_types=payload.event_types,
        is_active=payload.is_active,
    )
    return WebhookSubscriptionOut.model_validate(subscription)


@router.delete(
    "/{subscription_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a webhook subscription",
)
async def delete_subscription(
    subscription_id: uuid.UUID,
    caller: Caller,
    session: DbSession,
) -> Response:
    await webhooks.delete_subscription(session, caller.user_id, subscription_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{subscription_id}/deliveries",
    response_model=WebhookDeliveryPage,
    summary="Delivery log for a subscription",
)
async def list_deliveries(
    subscription_id: uuid.UUID,
    caller: Caller,
    session: DbSession,
    delivery_status: Annotated[
        Literal["pending", "retrying", "delivered", "failed"] | None,
        Query(alias="status"),
    ] = None,
    limit: Limit = 50,
    offset: Offset = 0,
) -> WebhookDeliveryPage:
    items, total = await webhooks.list_deliveries(
        session,
        caller.user_id,
        subscription_id,
        status=delivery_status,
        limit=limit,
        offset=offset,
    )
    return WebhookDeliveryPage(
        items=[WebhookDeliveryOut.model_validate(d) for d in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/{subscription_id}/deliveries/{delivery_id}/redeliver",
    response_model=WebhookDeliveryOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-queue a delivered or failed delivery",
)
async def redeliver(
    subscription_id: uuid.UUID,
    delivery_id: uuid.UUID,
    caller: Caller,
    session: DbSession,
) -> WebhookDeliveryOut:
    delivery = await webhooks.redeliver(session, caller.user_id, subscription_id, delivery_id)
    return WebhookDeliveryOut.model_validate(delivery)
