"""End-to-end: /api proxy through admission, upstream and webhook delivery."""
from __future__ import annotations

import json

import pytest

from taskflow_gateway.services import webhooks
from taskflow_gateway.services.webhook_dispatcher import SIGNATURE_HEADER, verify_signature


@pytest.mark.asyncio
async def test_health_needs_no_token(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_missing_token_gets_error_envelope(client, resource_handler):
    response = await client.get("/api/tasks")

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    assert set(response.json()["error"]) == {"code", "message", "details"}
    assert resource_handler.calls == []


@pytest.mark.asyncio
async def test_upstream_response_is_passed_through(client, auth_headers, resource_handler):
    resource_handler.respond("GET", "/tasks/5", 200, {"id": 5, "title": "Read"})

    response = await client.get("/api/tasks/5", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"id": 5, "title": "Read"}
    assert response.headers["X-RateLimit-Limit"] == "1000"
    assert response.headers["X-RateLimit-Remaining"] == "999"


@pytest.mark.asyncio
async def test_query_string_reaches_upstream(client, auth_headers, resource_handler):
    await client.get("/api/tasks", params={"status": "open"}, headers=auth_headers)

    assert resource_handler.calls[-1]["path"] == "/tasks?status=open"


@pytest.mark.asyncio
async def test_created_task_reaches_subscriber_signed(
    client, auth_headers, resource_handler, session_factory, dispatcher, receiver,
):
    async with session_factory() as session:
        sub = await webhooks.create_subscription(
            session,
            owner_user_id="alice",
            target_url="https://hooks.example.com/in",
            event_types=["task.created"],
        )
    resource_handler.respond("POST", "/tasks", 201, {"id": 11, "title": "Plan sprint"})

    response = await client.post("/api/tasks", json={"title": "Plan sprint"}, headers=auth_headers)
    assert response.status_code == 201

    assert await dispatcher.flush_events() == 1
    assert await dispatcher.dispatch_due() == 1

    [request] = receiver.requests
    assert verify_signature(sub.secret, request.content, request.headers[SIGNATURE_HEADER])
    payload = json.loads(request.content)
    assert payload["event"] == "task.created"
    assert payload["data"] == {"id": 11, "title": "Plan sprint"}


@pytest.mark.asyncio
async def test_failed_mutation_sends_no_webhook(
    client, auth_headers, resource_handler, session_factory, dispatcher,
):
    async with session_factory() as session:
        await webhooks.create_subscription(
            session,
            owner_user_id="alice",
            target_url="https://hooks.example.com/in",
            event_types=["task.deleted"],
        )
    resource_handler.respond("DELETE", "/tasks/3", 403, {"error": "not yours"})

    response = await client.delete("/api/tasks/3", headers=auth_headers)

    assert response.status_code == 403
    assert dispatcher.queued == 0
    assert await dispatcher.flush_events() == 0

