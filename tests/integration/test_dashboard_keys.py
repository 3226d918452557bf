"""Integration tests for the dashboard API (/dashboard/api/*).

Covers:
  - session required on every endpoint, CSRF required on every POST
  - create → key works against the proxy → list shows it (no secret) → revoke
    → proxy rejects it as not_found
  - revoking twice → 409 not_revoked; another user's key → 404 not_found
  - usage reflects today's admitted requests and the seconds to UTC midnight
  - key-management audit entries
"""

from __future__ import annotations

import pytest
from fastapi import FastAPI

from authproxy.audit.protocol import EventFilters

pytestmark = pytest.mark.asyncio


def _csrf(session: dict) -> dict[str, str]:
    return {"X-CSRF-Token": session["csrf_token"]}


class TestAccessControl:
    @pytest.mark.parametrize(
        "method, path",
        [
            ("GET", "/dashboard/api/csrf"),
            ("GET", "/dashboard/api/keys"),
            ("POST", "/dashboard/api/keys"),
            ("POST", "/dashboard/api/keys/1/revoke"),
            ("GET", "/dashboard/api/usage"),
        ],
    )
    async def test_session_required(self, client, method: str, path: str) -> None:
        response = await client.request(method, path)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "not_authenticated"

    async def test_forged_cookie_rejected(self, client) -> None:
        response = await client.get(
            "/dashboard/api/keys", headers={"Cookie": "authproxy_session=forged.value.signature"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_session"

    async def test_create_requires_csrf(self, client, login) -> None:
        await login()
        missing = await client.post("/dashboard/api/keys", json={})
        wrong = await client.post("/dashboard/api/keys", json={}, headers={"X-CSRF-Token": "nope"})
        assert missing.status_code == 403
        assert wrong.status_code == 403
        assert missing.json()["error"]["code"] == "csrf_failed"

    async def test_csrf_endpoint_issues_usable_token(self, client, login) -> None:
        await login()
        token = (await client.get("/dashboard/api/csrf")).json()["csrf_token"]
        response = await client.post("/dashboard/api/keys", json={}, headers={"X-CSRF-Token": token})
        assert response.status_code == 201

    async def test_csrf_token_from_other_session_rejected(self, client, login) -> None:
        first = await login("first@example.com")
        await login("second@example.com")
        response = await client.post("/dashboard/api/keys", json={}, headers=_csrf(first))
        assert response.status_code == 403


class TestKeyLifecycle:
    async def test_create_use_list_revoke(self, app: FastAPI, client, upstream, login) -> None:
        session = await login()

        created = await client.post("/dashboard/api/keys", json={"label": "  ci  "}, headers=_csrf(session))
        assert created.status_code == 201
        body = created.json()
        key = body["key"]
        assert key.startswith(body["prefix"] + ".")
        assert "not be shown again" in body["message"]

        proxied = await client.get("/v1/items", headers={"X-API-Key": key})
        assert proxied.status_code == 200
        assert proxied.headers["x-authproxy-user"] == str(session["user_id"])

        listed = (await client.get("/dashboard/api/keys")).json()["keys"]
        assert len(listed) == 1
        assert listed[0]["id"] == body["id"]
        assert listed[0]["label"] == "ci"
        assert listed[0]["active"] is True
        assert listed[0]["last_used_at"] is not None
        assert key not in str(listed)

        revoked = await client.post(f"/dashboard/api/keys/{body['id']}/revoke", headers=_csrf(session))
        assert revoked.status_code == 200
        assert revoked.json() == {"id": body["id"], "status": "revoked"}

        rejected = await client.get("/v1/items", headers={"X-API-Key": key})
        assert rejected.status_code == 401
        assert rejected.json()["error"]["code"] == "not_found"
        assert len(upstream.requests) == 1

        listed = (await client.get("/dashboard/api/keys")).json()["keys"]
        assert listed[0]["active"] is False
        assert listed[0]["revoked_at"] is not None

    async def test_create_without_body(self, client, login) -> None:
        session = await login()
        response = await client.post("/dashboard/api/keys", headers=_csrf(session))
        assert response.status_code == 201
        assert response.json()["key"]

    async def test_label_too_long(self, client, login) -> None:
        session = await login()
        response = await client.post("/dashboard/api/keys", json={"label": "x" * 101}, headers=_csrf(session))
        assert response.status_code == 400

    async def test_revoke_twice(self, client, login) -> None:
        session = await login()
        key_id = (await client.post("/dashboard/api/keys", json={}, headers=_csrf(session))).json()["id"]
        await client.post(f"/dashboard/api/keys/{key_id}/revoke", headers=_csrf(session))

        again = await client.post(f"/dashboard/api/keys/{key_id}/revoke", headers=_csrf(session))
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "not_revoked"

    async def test_cannot_revoke_other_users_key(self, app: FastAPI, client, login, make_key) -> None:
        owner_id, key = await make_key("owner@example.com")
        (info,) = await app.state.keys.list_keys(owner_id)

        session = await login("intruder@example.com")
        response = await client.post(f"/dashboard/api/keys/{info.id}/revoke", headers=_csrf(session))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert (await app.state.keys.validate(key)).ok

    async def test_keys_listed_per_user(self, client, login, make_key) -> None:
        await make_key("someone-else@example.com")
        await login()
        assert (await client.get("/dashboard/api/keys")).json() == {"keys": []}

    async def test_audit_entries(self, app: FastAPI, client, login) -> None:
        session = await login()
        key_id = (await client.post("/dashboard/api/keys", json={}, headers=_csrf(session))).json()["id"]
        await client.post(f"/dashboard/api/keys/{key_id}/revoke", headers=_csrf(session))
        await client.post(f"/dashboard/api/keys/{key_id}/revoke", headers=_csrf(session))

        events = await app.state.audit_backend.query_events(EventFilters(user_id=session["user_id"]))
        types = [event.type for event in reversed(events)]
        assert types[-3:] == ["key_create", "key_revoke", "key_revoke_fail"]
        assert events[0].details == {"key_id": key_id, "reason": "not_revoked"}


class TestUsage:
    async def test_usage_counts_today(self, app: FastAPI, client, login) -> None:
        session = await login()
        key = (await client.post("/dashboard/api/keys", json={}, headers=_csrf(session))).json()["key"]
        for _ in range(3):
            await client.get("/v1/items", headers={"X-API-Key": key})

        usage = (await client.get("/dashboard/api/usage")).json()
        assert usage == {
            "date": "2024-05-01",
            "count": 3,
            "limit": app.state.config.quota.daily_limit,
            "reset_seconds": 12 * 3600,
        }
