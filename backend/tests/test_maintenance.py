"""Periodic housekeeping across token store, limiters and delivery log."""
from __future__ import annotations

import datetime

import pytest

from taskflow_gateway.core.errors import ExpiredToken, InvalidToken
from taskflow_gateway.services import webhooks
from taskflow_gateway.services.events import DomainEvent
from taskflow_gateway.services.maintenance import run_maintenance


@pytest.mark.asyncio
async def test_maintenance_purges_old_state(gateway, dispatcher, token_store, session_factory, clock):
    stale = await token_store.issue("alice", ttl=datetime.timedelta(seconds=1))
    fresh = await token_store.issue("alice", ttl=datetime.timedelta(days=60))
    gateway.ip_limiter.check_and_increment("10.0.0.9", 100, 60)

    async with session_factory() as session:
        await webhooks.create_subscription(
            session,
            owner_user_id="alice",
            target_url="https://hooks.example.com/in",
            event_types=["task.created"],
        )
    await dispatcher.fan_out(DomainEvent(type="task.created", data={"id": 1}))
    await dispatcher.dispatch_due()

    clock.advance(31 * 86_400)
    report = await run_maintenance(gateway, dispatcher, now=clock.now)

    assert report.tokens_purged == 1
    assert report.windows_dropped == 1
    assert report.deliveries_purged == 1
    with pytest.raises(InvalidToken):
        await token_store.validate(stale.token)
    assert await token_store.validate(fresh.token) == "alice"


@pytest.mark.asyncio
async def test_recently_expired_tokens_are_kept_for_a_day(gateway, dispatcher, token_store, clock):
    issued = await token_store.issue("alice", ttl=datetime.timedelta(seconds=1))
    clock.advance(3600)

    report = await run_maintenance(gateway, dispatcher, now=clock.now)

    assert report.tokens_purged == 0
    assert report.deliveries_purged == 0
    with pytest.raises(ExpiredToken):
        await token_store.validate(issued.token)
