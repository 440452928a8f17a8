"""HTTP tests for /auth (login, logout, logout-all)."""
from __future__ import annotations

import pytest


async def login(client, username="alice", password="wonderland"):
    return await client.post(
        "/auth/login", json={"username": username, "password": password},
    )


@pytest.mark.asyncio
async def test_login_issues_a_working_token(client, resource_handler):
    response = await login(client)

    assert response.status_code == 201
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user_id"] == "alice"
    assert body["access_token"].startswith("tf_")
    assert "X-RateLimit-Remaining" in response.headers

    me = await client.get(
        "/api/tasks", headers={"Authorization": f"Bearer {body['access_token']}"},
    )
    assert me.status_code == 200
    assert resource_handler.calls[-1]["user_id"] == "alice"


@pytest.mark.asyncio
async def test_bad_credentials_are_passed_through(client):
    response = await login(client, password="wrong")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "bad_credentials"


@pytest.mark.asyncio
async def test_login_upstream_without_user_id_is_502(client, resource_handler):
    resource_handler.respond("POST", "/auth/login", 200, {"ok": True})

    response = await login(client)

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "upstream_unavailable"


@pytest.mark.asyncio
async def test_login_is_ip_rate_limited(client):
    for _ in range(100):
        await login(client, password="wrong")

    response = await login(client)

    assert response.status_code == 429
    assert response.json()["error"]["code"] == "rate_limited"
    assert 1 <= int(response.headers["Retry-After"]) <= 60


@pytest.mark.asyncio
async def test_logout_revokes_the_token(client, auth_headers):
    response = await client.post("/auth/logout", headers=auth_headers)
    assert response.status_code == 204

    after = await client.get("/api/tasks", headers=auth_headers)

    assert after.status_code == 401
    error = after.json()["error"]
    assert error["code"] == "token_revoked"
    assert error["details"] == {}
    assert error["message"]
    assert after.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_logout_requires_a_token(client):
    response = await client.post("/auth/logout")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


@pytest.mark.asyncio
async def test_logout_all_revokes_every_token_of_the_caller(client, token_store, auth_headers):
    second = (await token_store.issue("alice")).token
    bobs = (await token_store.issue("bob")).token

    response = await client.post("/auth/logout-all", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"revoked": 2}
    assert (await client.get("/api/tasks", headers={"Authorization": f"Bearer {second}"})).status_code == 401
    assert (await client.get("/api/tasks", headers={"Authorization": f"Bearer {bobs}"})).status_code == 200
