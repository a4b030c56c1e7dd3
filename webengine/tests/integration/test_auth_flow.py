from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from webengine.apps.api.main import create_app
from webengine.core.config import get_settings
from webengine.domain.models import AuditEvent
from webengine.persistence.db import SessionLocal
from webengine.tests.utils.auth import DEFAULT_PASSWORD, create_test_user, fetch_csrf_token, login


CSRF_MESSAGE = "Invalid security token. Please refresh the page and try again."


async def _event_types() -> list[str]:
    async with SessionLocal() as session:
        return list((await session.execute(select(AuditEvent.event_type))).scalars().all())


@pytest.mark.asyncio
async def test_unsafe_requests_without_csrf_token_are_rejected() -> None:
    # POSTs without a valid token fail with the CSRF envelope and the token rotates.
    app = create_app()
    transport = ASGITransport(app=app)
    await create_test_user(username="csrf_user")

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/v1/auth/login", json={"username": "csrf_user", "password": DEFAULT_PASSWORD})
        assert response.status_code == 403
        payload = response.json()
        assert payload["error"]["code"] == "CSRF_INVALID"
        assert payload["error"]["message"] == CSRF_MESSAGE
        assert payload["meta"]["request_id"] == response.headers["X-Request-Id"]

        token = await fetch_csrf_token(client)
        response = await client.post(
            "/v1/auth/login",
            json={"username": "csrf_user", "password": DEFAULT_PASSWORD},
            headers={"X-CSRF-Token": "forged"},
        )
        assert response.status_code == 403

        # The failed attempt rotated the session token, so the old one is dead too.
        response = await client.post(
            "/v1/auth/login",
            json={"username": "csrf_user", "password": DEFAULT_PASSWORD},
            headers={"X-CSRF-Token": token},
        )
        assert response.status_code == 403

        fresh = await fetch_csrf_token(client)
        assert fresh != token
        response = await client.post(
            "/v1/auth/login",
            json={"username": "csrf_user", "password": DEFAULT_PASSWORD, "csrf_token": fresh},
        )
        assert response.status_code == 200

    assert "auth.csrf.failure" in await _event_types()


@pytest.mark.asyncio
async def test_login_me_logout_roundtrip() -> None:
    app = create_app()
    transport = ASGITransport(app=app)
    await create_test_user(username="roundtrip", role="client")

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Authentication required"

        token = await fetch_csrf_token(client)
        response = await client.post(
            "/v1/auth/login",
            json={"username": "roundtrip", "password": "wrong-password"},
            headers={"X-CSRF-Token": token},
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid username or password."

        headers = await login(client, "roundtrip")
        response = await client.get("/v1/auth/me")
        assert response.status_code == 200
        assert response.json()["data"]["username"] == "roundtrip"
        assert response.json()["data"]["role"] == "client"

        response = await client.post("/v1/auth/logout", headers=headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["logged_out"] is True
        assert data["failed_steps"] == []
        assert data["csrf_token"] != headers["X-CSRF-Token"]

        response = await client.get("/v1/auth/me")
        assert response.status_code == 401

    events = await _event_types()
    assert "auth.login.failure" in events
    assert "auth.login.success" in events
    assert "auth.logout" in events


@pytest.mark.asyncio
async def test_inactive_account_cannot_log_in() -> None:
    app = create_app()
    transport = ASGITransport(app=app)
    await create_test_user(username="sleeper", is_active=False)

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        token = await fetch_csrf_token(client)
        response = await client.post(
            "/v1/auth/login",
            json={"username": "sleeper", "password": DEFAULT_PASSWORD},
            headers={"X-CSRF-Token": token},
        )
    assert response.status_code == 403
    assert response.json()["error"]["message"] == "Your account is not active."


@pytest.mark.asyncio
async def test_remember_me_restores_session_until_logout() -> None:
    # A remember-me cookie rebuilds an expired session; logout revokes it.
    app = create_app()
    transport = ASGITransport(app=app)
    await create_test_user(username="returning")
    session_cookie = get_settings().session_cookie_name

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await login(client, "returning", remember_me=True)
        remember_token = client.cookies.get("remember_token")
        assert remember_token

        client.cookies.delete(session_cookie)
        response = await client.get("/v1/auth/me")
        assert response.status_code == 200
        assert response.json()["data"]["username"] == "returning"

        headers = {"X-CSRF-Token": await fetch_csrf_token(client)}
        response = await client.post("/v1/auth/logout", headers=headers)
        assert response.status_code == 200

    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies={"remember_token": remember_token},
    ) as client:
        response = await client.get("/v1/auth/me")
        assert response.status_code == 401


@pytest.mark.asyncio
async def test_register_creates_user_without_logging_in() -> None:
    app = create_app()
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://test") as client:
        token = await fetch_csrf_token(client)
        response = await client.post(
            "/v1/auth/register",
            json={"username": "newcomer", "email": "newcomer@example.test", "password": "longenough"},
            headers={"X-CSRF-Token": token},
        )
        assert response.status_code == 201
        assert response.json()["data"]["role"] == "user"

        duplicate = await client.post(
            "/v1/auth/register",
            json={"username": "newcomer", "email": "other@example.test", "password": "longenough"},
            headers={"X-CSRF-Token": token},
        )
        assert duplicate.status_code == 400
        assert duplicate.json()["error"]["code"] == "VALIDATION_ERROR"

        response = await client.get("/v1/auth/me")
        assert response.status_code == 401
