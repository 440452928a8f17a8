"""
Periodic housekeeping.

  • expired tokens      — deleted one day after expiry
  • rate windows        — elapsed windows dropped from both limiters
  • delivered webhooks  — purged after WEBHOOK_DELIVERED_RETENTION_DAYS

Failed and retrying deliveries are kept for inspection/redelivery.
"""

import asyncio
import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass

from taskflow_gateway.core.config import settings
from taskflow_gateway.core.database import utcnow
from taskflow_gateway.gateway.request_gateway import RequestGateway
from taskflow_gateway.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

TOKEN_GRACE = datetime.timedelta(days=1)


@dataclass(frozen=True, slots=True)
class MaintenanceReport:
    tokens_purged: int
    windows_dropped: int
    deliveries_purged: int


async def run_maintenance(
    gateway: RequestGateway,
    dispatcher: WebhookDispatcher,
    *,
    now: datetime.datetime | None = None,
) -> MaintenanceReport:
    now = now or utcnow()
    tokens_purged = await gateway.token_store.purge_expired(now - TOKEN_GRACE)
    windows_dropped = gateway.ip_limiter.sweep() + gateway.token_limiter.sweep()
    deliveries_purged = await dispatcher.purge_delivered(
        now - datetime.timedelta(days=settings.WEBHOOK_DELIVERED_RETENTION_DAYS)
    )
    report = MaintenanceReport(tokens_purged, windows_dropped, deliveries_purged)
    if tokens_purged or deliveries_purged:
        logger.info("Maintenance: %s", report)
    return report


async def maintenance_loop(
    gateway: RequestGateway,
    dispatcher: WebhookDispatcher,
    *,
    interval: float = settings.MAINTENANCE_INTERVAL_SECONDS,
    clock: Callable[[], datetime.datetime] = utcnow,
) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_maintenance(gateway, dispatcher, now=clock())
        except Exception:
            logger.exception("Maintenance run failed (non-fatal)")
