"""Integration tests for the catch-all proxy route: admission + forwarding.

The app runs in-process behind httpx.ASGITransport; the upstream is a
MockUpstream (httpx.MockTransport) that records what it receives.

Covers:
  - admitted requests reach the upstream without X-API-Key, with X-Real-IP,
    X-Forwarded-For and X-Request-ID; responses carry X-AuthProxy-User
  - JSON, form and opaque bodies arrive byte-identical with a matching Content-Length
  - path (percent-encoded) and query string preserved
  - upstream 4xx/5xx relayed verbatim
  - blocked paths, missing and bad keys, quota → error envelope, never forwarded
  - usage is counted and audited before the upstream is contacted
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest
from fastapi import FastAPI

from authproxy.audit.protocol import EventFilters

pytestmark = pytest.mark.asyncio


def _error_code(response: httpx.Response) -> str:
    return response.json()["error"]["code"]


class TestAdmittedRequests:
    async def test_get_forwarded(self, client, upstream, make_key) -> None:
        user_id, key = await make_key()
        response = await client.get("/v1/items", headers={"X-API-Key": key})

        assert response.status_code == 200
        assert response.json() == {"result": "ok"}
        assert response.headers["x-authproxy-user"] == str(user_id)

        (forwarded,) = upstream.requests
        assert str(forwarded.url) == "http://upstream.internal/v1/items"
        assert forwarded.method == "GET"
        assert "x-api-key" not in forwarded.headers
        assert forwarded.headers["x-real-ip"] == "127.0.0.1"
        assert forwarded.headers["x-forwarded-for"] == "127.0.0.1"
        assert len(forwarded.headers["x-request-id"]) == 26
        assert forwarded.headers["host"] == "upstream.internal"

    async def test_key_header_is_case_insensitive(self, client, upstream, make_key) -> None:
        _, key = await make_key()
        response = await client.get("/v1/items", headers={"x-api-key": key})
        assert response.status_code == 200
        assert len(upstream.requests) == 1

    async def test_path_and_query_preserved(self, client, upstream, make_key) -> None:
        _, key = await make_key()
        await client.get("/v1/files/a%2Fb/search?q=a%20b&tag=x&tag=y", headers={"X-API-Key": key})
        (forwarded,) = upstream.requests
        assert forwarded.url.raw_path == b"/v1/files/a%2Fb/search?q=a%20b&tag=x&tag=y"

    async def test_json_body_byte_identical(self, client, upstream, make_key) -> None:
        _, key = await make_key()
        raw = b'{"b": 2,   "a": "x",\n "nested": {"k": [1, 2]}}'
        response = await client.post(
            "/v1/items",
            content=raw,
            headers={"X-API-Key": key, "Content-Type": "application/json"},
        )
        assert response.status_code == 200

        (forwarded,) = upstream.requests
        assert forwarded.content == raw
        assert forwarded.headers["content-length"] == str(len(raw))
        assert forwarded.headers["content-type"] == "application/json"
        assert json.loads(forwarded.content) == {"b": 2, "a": "x", "nested": {"k": [1, 2]}}

    async def test_form_body_byte_identical(self, client, upstream, make_key) -> None:
        _, key = await make_key()
        raw = b"a=1&b=x&a=2&c=hello+world"
        await client.put(
            "/v1/form",
            content=raw,
            headers={"X-API-Key": key, "Content-Type": "application/x-www-form-urlencoded"},
        )
        (forwarded,) = upstream.requests
        assert forwarded.method == "PUT"
        assert forwarded.content == raw
        assert forwarded.headers["content-length"] == str(len(raw))

    async def test_opaque_body_streamed(self, client, upstream, make_key) -> None:
        _, key = await make_key()
        raw = bytes(range(256)) * 64
        await client.post(
            "/v1/upload",
            content=raw,
            headers={"X-API-Key": key, "Content-Type": "application/octet-stream"},
        )
        (forwarded,) = upstream.requests
        assert forwarded.content == raw
        assert forwarded.headers["content-length"] == str(len(raw))

    async def test_upstream_error_status_relayed(self, client, upstream, make_key) -> None:
        user_id, key = await make_key()
        upstream.status_code = 503
        upstream.body = b'{"detail": "maintenance"}'
        upstream.headers = {"content-type": "application/json", "x-upstream": "yes"}

        response = await client.get("/v1/items", headers={"X-API-Key": key})
        assert response.status_code == 503
        assert response.content == b'{"detail": "maintenance"}'
        assert response.headers["x-upstream"] == "yes"
        assert response.headers["x-authproxy-user"] == str(user_id)

    async def test_usage_counted_and_audited(self, app: FastAPI, client, make_key) -> None:
        user_id, key = await make_key()
        for _ in range(3):
            await client.get("/v1/items", headers={"X-API-Key": key})

        state = app.state
        assert await state.quota.get_count(user_id, "2024-05-01") == 3
        hits = await state.audit_backend.count_events(EventFilters(type="proxy_hit", user_id=user_id))
        assert hits == 3


class TestRejectedRequests:
    @pytest.mark.parametrize("path", ["/docs", "/redoc", "/openapi.json"])
    async def test_blocked_paths_with_valid_key(self, client, upstream, make_key, path: str) -> None:
        _, key = await make_key()
        response = await client.get(path, headers={"X-API-Key": key})
        assert response.status_code == 404
        assert _error_code(response) == "not_found"
        assert upstream.requests == []

    async def test_missing_key(self, client, upstream) -> None:
        response = await client.get("/v1/items")
        assert response.status_code == 401
        assert response.json() == {"error": {"message": "Missing X-API-Key header", "code": "missing_key"}}
        assert upstream.requests == []

    @pytest.mark.parametrize(
        "api_key, code",
        [("short", "format"), ("deadbeef.this-prefix-does-not-exist-000000", "not_found")],
    )
    async def test_bad_keys(self, client, upstream, api_key: str, code: str) -> None:
        response = await client.get("/v1/items", headers={"X-API-Key": api_key})
        assert response.status_code == 401
        assert _error_code(response) == code
        assert upstream.requests == []

    async def test_revoked_key(self, app: FastAPI, client, upstream, make_key) -> None:
        user_id, key = await make_key()
        (info,) = await app.state.keys.list_keys(user_id)
        await app.state.keys.revoke(user_id, info.id)

        response = await client.get("/v1/items", headers={"X-API-Key": key})
        assert response.status_code == 401
        assert _error_code(response) == "not_found"

    async def test_quota_exceeded(self, app: FastAPI, client, upstream, clock, make_key) -> None:
        app.state.config.quota.daily_limit = 2
        clock.now = datetime(2024, 5, 1, 23, 59, 30, tzinfo=timezone.utc)
        _, key = await make_key()

        statuses = [(await client.get("/v1/items", headers={"X-API-Key": key})).status_code for _ in range(2)]
        assert statuses == [200, 200]

        response = await client.get("/v1/items", headers={"X-API-Key": key})
        assert response.status_code == 429
        assert response.headers["retry-after"] == "30"
        assert response.json() == {
            "error": {"message": "Daily request quota exceeded", "code": "quota_exceeded"},
            "count": 2,
            "limit": 2,
            "reset_seconds": 30,
        }
        assert len(upstream.requests) == 2

    async def test_quota_resets_at_utc_midnight(self, app: FastAPI, client, clock, make_key) -> None:
        app.state.config.quota.daily_limit = 1
        clock.now = datetime(2024, 5, 1, 23, 59, 59, tzinfo=timezone.utc)
        _, key = await make_key()

        assert (await client.get("/v1/items", headers={"X-API-Key": key})).status_code == 200
        assert (await client.get("/v1/items", headers={"X-API-Key": key})).status_code == 429
        clock.advance(2)
        assert (await client.get("/v1/items", headers={"X-API-Key": key})).status_code == 200

    async def test_not_ready(self, app: FastAPI, client, upstream, make_key) -> None:
        _, key = await make_key()
        app.state.ready = False
        response = await client.get("/v1/items", headers={"X-API-Key": key})
        assert response.status_code == 503
        assert _error_code(response) == "service_starting"
        assert upstream.requests == []
