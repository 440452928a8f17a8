"""
Background webhook dispatcher.

Two loops run beside the HTTP server:

  1. Fan-out   — publish() drops a DomainEvent on an in-process queue and
                 returns immediately. The fan-out loop resolves every
                 active subscription whose event_types contain the event
                 and writes one `pending` WebhookDelivery row per match.
  2. Delivery  — polls the outbox for due rows (pending/retrying with
                 next_retry_at <= now) and hands each to its own worker
                 task, bounded by a global in-flight cap and a
                 per-subscriber cap. Polling continues while workers run.
                 Rows of paused (inactive) subscriptions are left due.

Each attempt:
  • body = compact JSON {event, timestamp, data}
  • X-Webhook-Signature: sha256=<HMAC-SHA256(secret, body)>
  • independent timeout (WEBHOOK_TIMEOUT_SECONDS)
  • 2xx → delivered; anything else → retrying with backoff
    (1m, 5m, 30m, 2h, 12h) until WEBHOOK_MAX_ATTEMPTS, then failed.

Delivery is at-least-once and unordered; subscribers de-duplicate on
X-Webhook-Delivery-Id. Failures never propagate to the request that
produced the event.
"""

from __future__ import annotations

import asyncio
import datetime
import hmac
import json
import logging
import uuid
from collections import Counter
from collections.abc import Callable, Collection, Sequence
from hashlib import sha256
from typing import Any

import httpx
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskflow_gateway.core.config import settings
from taskflow_gateway.core.database import utcnow
from taskflow_gateway.core.errors import DeliveryFailure
from taskflow_gateway.models.webhook import (
    DUE_STATUSES,
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RETRYING,
    WebhookDelivery,
    WebhookSubscription,
)
from taskflow_gateway.services.events import DomainEvent

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


def encode_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, header_value: str | None) -> bool:
    """Constant-time check of an X-Webhook-Signature header."""
    if not header_value:
        return False
    return hmac.compare_digest(sign_payload(secret, body), header_value)


class WebhookDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = settings.WEBHOOK_TIMEOUT_SECONDS,
        max_attempts: int = settings.WEBHOOK_MAX_ATTEMPTS,
        backoff_seconds: Sequence[int] = tuple(settings.WEBHOOK_BACKOFF_SECONDS),
        batch_size: int = settings.WEBHOOK_BATCH_SIZE,
        max_in_flight: int = settings.WEBHOOK_MAX_IN_FLIGHT,
        max_in_flight_per_subscriber: int = settings.WEBHOOK_MAX_IN_FLIGHT_PER_SUBSCRIBER,
        queue_size: int = settings.WEBHOOK_QUEUE_SIZE,
        dispatch_interval: float = settings.WEBHOOK_DISPATCH_INTERVAL_SECONDS,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        if not backoff_seconds:
            raise ValueError("backoff_seconds must not be empty")

        self._session_factory = session_factory
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self._timeout = timeout_seconds
        self._max_attempts = max_attempts
        self._backoff = tuple(backoff_seconds)
        self._batch_size = batch_size
        self._dispatch_interval = dispatch_interval
        self._clock = clock

        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=queue_size)
        self._max_in_flight = max_in_flight
        self._per_subscriber = max_in_flight_per_subscriber
        # Claimed delivery ids and per-subscription counts; idle subscriptions
        # have no entry.
        self._in_flight: set[uuid.UUID] = set()
        self._subscriber_load: Counter[uuid.UUID] = Counter()
        self._workers: set[asyncio.Task[None]] = set()
        self._tasks: list[asyncio.Task[None]] = []

    # ── Publishing (request path) ───────────────────────────
    def publish(self, event: DomainEvent) -> bool:
        """Enqueue an event for fan-out. Never blocks, never raises."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error("Webhook queue full — dropping %s event", event.type)
            return False
        return True

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    # ── Fan-out ─────────────────────────────────────────────
    async def fan_out(self, event: DomainEvent) -> list[WebhookDelivery]:
        """Create one pending delivery per active subscription matching the event."""
        now = self._clock()
        payload = event.to_payload()

        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(WebhookSubscription.is_active.is_(True))
            )
            subscriptions = [
                sub for sub in result.scalars() if event.type in (sub.event_types or [])
            ]

            deliveries = [
                WebhookDelivery(
                    subscription_id=sub.id,
                    event_type=event.type,
                    request_body=payload,
                    status=STATUS_PENDING,
                    attempt_count=0,
                    next_retry_at=now,
                    created_at=now,
                    updated_at=now,
                )
                for sub in subscriptions
            ]
            session.add_all(deliveries)
            await session.commit()

        if deliveries:
            logger.info("Queued %d delivery(ies) for %s", len(deliveries), event.type)
        return deliveries

    async def flush_events(self) -> int:
        """Fan out everything currently queued. Returns the number of events handled."""
        handled = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return handled
            try:
                await self.fan_out(event)
            finally:
                self._queue.task_done()
            handled += 1

    # ── Delivery ────────────────────────────────────────────
    def backoff_for(self, attempt: int) -> datetime.timedelta:
        """Delay after the `attempt`-th failure (1-based)."""
        index = min(attempt, len(self._backoff)) - 1
        return datetime.timedelta(seconds=self._backoff[index])

    async def claim_due(
        self, *, skip: Collection[uuid.UUID] = (),
    ) -> dict[uuid.UUID, asyncio.Task[None]]:
        """
        Start a worker for every due delivery that has a free slot.

        A row is claimed only while its subscriber is under
        WEBHOOK_MAX_IN_FLIGHT_PER_SUBSCRIBER and the dispatcher is under
        WEBHOOK_MAX_IN_FLIGHT, so a slow endpoint holds at most its own
        slots and never a whole batch. Rows of paused subscriptions stay
        due and untouched. Returns the started workers by delivery id.
        """
        free = self._max_in_flight - len(self._in_flight)
        if free <= 0:
            return {}

        excluded = self._in_flight.union(skip)
        query = (
            select(WebhookDelivery.id, WebhookDelivery.subscription_id)
            .outerjoin(
                WebhookSubscription,
                WebhookSubscription.id == WebhookDelivery.subscription_id,
            )
            .where(
                WebhookDelivery.status.in_(DUE_STATUSES),
                WebhookDelivery.next_retry_at <= self._clock(),
                # Deleted subscriptions still come through and are failed in attempt().
                or_(
                    WebhookSubscription.id.is_(None),
                    WebhookSubscription.is_active.is_(True),
                ),
            )
            .order_by(WebhookDelivery.next_retry_at.asc(), WebhookDelivery.created_at.asc())
            .limit(self._batch_size)
        )
        if excluded:
            query = query.where(WebhookDelivery.id.notin_(excluded))

        async with self._session_factory() as session:
            rows = (await session.execute(query)).all()

        started: dict[uuid.UUID, asyncio.Task[None]] = {}
        for row in rows:
            if len(started) >= free:
                break
            if self._subscriber_load[row.subscription_id] >= self._per_subscriber:
                continue
            self._in_flight.add(row.id)
            self._subscriber_load[row.subscription_id] += 1
            task = asyncio.create_task(
                self._run(row.id, row.subscription_id), name=f"webhook-{row.id}",
            )
            self._workers.add(task)
            task.add_done_callback(self._workers.discard)
            started[row.id] = task
        return started

    async def dispatch_due(self) -> int:
        """
        Drain the outbox: keep claiming due rows as slots free up until
        nothing claimable is left. Each delivery is attempted at most once
        per call. Returns how many attempts were made.
        """
        seen: set[uuid.UUID] = set()
        running: set[asyncio.Task[None]] = set()
        attempted = 0
        while True:
            started = await self.claim_due(skip=seen)
            seen.update(started)
            attempted += len(started)
            running.update(started.values())
            if not running:
                return attempted
            _, running = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)

    async def _run(self, delivery_id: uuid.UUID, subscription_id: uuid.UUID) -> None:
        try:
            await self.attempt(delivery_id)
        except Exception:
            # One broken delivery must not take its neighbours down with it.
            logger.exception("Webhook delivery %s crashed", delivery_id)
        finally:
            self._in_flight.discard(delivery_id)
            self._subscriber_load[subscription_id] -= 1
            if self._subscriber_load[subscription_id] <= 0:
                del self._subscriber_load[subscription_id]

    async def attempt(self, delivery_id: uuid.UUID) -> str | None:
        """
        Make one delivery attempt and record the outcome.

        Returns the delivery's new status, or None if it was not attempted
        (already finished, or its subscription is paused).
        """
        async with self._session_factory() as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
            if delivery is None or delivery.status not in DUE_STATUSES:
                return None
            subscription = await session.get(WebhookSubscription, delivery.subscription_id)

            if subscription is None:
                self._record(delivery, STATUS_FAILED, error="subscription deleted")
                await session.commit()
                logger.warning("Webhook %s failed: subscription deleted", delivery_id)
                return STATUS_FAILED

            if not subscription.is_active:
                # Paused: the row stays due and resumes on re-activation.
                return None

            if delivery.attempt_count >= self._max_attempts:
                self._record(delivery, STATUS_FAILED, error=delivery.last_error)
                await session.commit()
                return STATUS_FAILED

            target_url = subscription.target_url
            secret = subscription.secret
            body = encode_body(delivery.request_body)
            event_type = delivery.event_type

        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event_type,
            "X-Webhook-Delivery-Id": str(delivery_id),
            "X-Webhook-Timestamp": str(int(self._clock().timestamp())),
            SIGNATURE_HEADER: sign_payload(secret, body),
        }

        failure: DeliveryFailure | None = None
        status_code: int | None = None
        try:
            status_code = await self._post(target_url, body, headers)
        except DeliveryFailure as exc:
            failure = exc
            status_code = exc.status_code

        async with self._session_factory() as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
            if delivery is None:
                return None
            attempt = delivery.attempt_count + 1
            delivery.attempt_count = attempt
            delivery.last_status_code = status_code

            if failure is None:
                self._record(delivery, STATUS_DELIVERED)
                new_status = STATUS_DELIVERED
                logger.info(
                    "Delivered %s %s to %s (attempt %d)",
                    event_type, delivery_id, target_url, attempt,
                )
            elif attempt >= self._max_attempts:
                self._record(delivery, STATUS_FAILED, error=failure.reason)
                new_status = STATUS_FAILED
                logger.warning(
                    "Webhook %s to %s failed permanently after %d attempts: %s",
                    delivery_id, target_url, attempt, failure.reason,
                )
            else:
                next_at = self._clock() + self.backoff_for(attempt)
                self._record(delivery, STATUS_RETRYING, error=failure.reason, next_retry_at=next_at)
                new_status = STATUS_RETRYING
                logger.info(
                    "Webhook %s to %s failed (attempt %d/%d), retrying at %s: %s",
                    delivery_id, target_url, attempt, self._max_attempts, next_at, failure.reason,
                )
            await session.commit()
        return new_status

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> int:
        try:
            response = await self._http.post(url, content=body, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise DeliveryFailure(f"timeout after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            raise DeliveryFailure(str(exc) or exc.__class__.__name__) from exc

        if 200 <= response.status_code < 300:
            return response.status_code
        raise DeliveryFailure(
            f"HTTP {response.status_code}: {response.text[:500]}",
            status_code=response.status_code,
        )

    def _record(
        self,
        delivery: WebhookDelivery,
        status: str,
        *,
        error: str | None = None,
        next_retry_at: datetime.datetime | None = None,
    ) -> None:
        delivery.status = status
        delivery.last_error = error
        delivery.next_retry_at = next_retry_at
        delivery.updated_at = self._clock()

    async def purge_delivered(self, before: datetime.datetime) -> int:
        """Delete delivered rows created before `before`. Returns the count."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(WebhookDelivery).where(
                    WebhookDelivery.status == STATUS_DELIVERED,
                    WebhookDelivery.created_at < before,
                )
            )
            await session.commit()
        return result.rowcount or 0

    # ── Lifecycle ───────────────────────────────────────────
    async def _fan_out_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.fan_out(event)
            except Exception:
                logger.exception("Fan-out failed for %s event (non-fatal)", event.type)
            finally:
                self._queue.task_done()

    async def _delivery_loop(self) -> None:
        # Workers outlive the poll that started them; each tick only tops up
        # free slots, so one slow subscriber never gates the next poll.
        while True:
            try:
                await self.claim_due()
            except Exception:
                logger.exception("Webhook dispatch sweep failed (non-fatal)")
            await asyncio.sleep(self._dispatch_interval)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._fan_out_loop(), name="webhook-fan-out"),
            asyncio.create_task(self._delivery_loop(), name="webhook-delivery"),
        ]
        logger.info("Webhook dispatcher started ✓")

    async def stop(self) -> None:
        # Interrupted attempts leave their rows due; they are retried on restart.
        tasks = [*self._tasks, *self._workers]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        if self._owns_client:
            await self._http.aclose()
        logger.info("Webhook dispatcher stopped ✓")
