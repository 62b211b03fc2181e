from __future__ import annotations

import pytest

from app.core.settings import settings


REGISTER_BODY = {
    "email": "cookie@example.com",
    "password": "correct horse battery",
    "name": "Cory",
    "org_name": "Acme",
}


@pytest.mark.asyncio
async def test_cookie_session_needs_matching_csrf_header_for_writes(client) -> None:
    registered = await client.post("/api/v1/auth/register", json=REGISTER_BODY)
    csrf_token = registered.cookies[settings.csrf_cookie_name]

    me = await client.get("/api/v1/auth/me")
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "cookie@example.com"

    missing = await client.post("/api/v1/orgs", json={"name": "Second"})
    assert missing.status_code == 403
    assert missing.json()["error"] == "CSRF"

    mismatched = await client.post(
        "/api/v1/orgs",
        json={"name": "Second"},
        headers={settings.csrf_header_name: "not-the-token"},
    )
    assert mismatched.status_code == 403

    created = await client.post(
        "/api/v1/orgs",
        json={"name": "Second"},
        headers={settings.csrf_header_name: csrf_token},
    )
    assert created.status_code == 201


@pytest.mark.asyncio
async def test_bearer_requests_skip_the_csrf_check(client) -> None:
    registered = (await client.post("/api/v1/auth/register", json=REGISTER_BODY)).json()

    created = await client.post(
        "/api/v1/orgs",
        json={"name": "Second"},
        headers={"Authorization": f"Bearer {registered['access_token']}"},
    )

    assert created.status_code == 201


@pytest.mark.asyncio
async def test_logout_clears_session_cookies(client) -> None:
    await client.post("/api/v1/auth/register", json=REGISTER_BODY)

    response = await client.post("/api/v1/auth/logout")

    assert response.status_code == 200
    assert settings.access_cookie_name not in client.cookies
    assert (await client.get("/api/v1/auth/me")).status_code == 401


@pytest.mark.asyncio
async def test_responses_carry_security_headers(client) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "Strict-Transport-Security" not in response.headers
