"""Unit tests for authproxy.proxy.headers — upstream and client header rules.

Covers:
  - X-API-Key, Host and hop-by-hop headers never reach the upstream
  - headers named in Connection are dropped too
  - X-Real-IP set from the caller, X-Forwarded-For appended to
  - X-Request-ID added unless the caller sent one
  - RAW / REENCODED framing replaces Content-Length, STREAM keeps the caller's
  - client response: hop-by-hop dropped, Content-Length kept, X-AuthProxy-User added
"""

from __future__ import annotations

import httpx

from authproxy.proxy.headers import (
    BodyFraming,
    build_client_response_headers,
    build_upstream_headers,
)


def _names(headers: list[tuple[str, str]]) -> list[str]:
    return [name.lower() for name, _ in headers]


def _get(headers: list[tuple[str, str]], name: str) -> list[str]:
    return [value for key, value in headers if key.lower() == name.lower()]


class TestUpstreamHeaders:
    def test_api_key_and_host_stripped(self) -> None:
        headers = build_upstream_headers(
            [("Host", "proxy.example.com"), ("X-API-Key", "abcd1234.secret"), ("Accept", "application/json")],
            client_ip="10.0.0.5",
            request_id="01HXYZ",
        )
        assert "x-api-key" not in _names(headers)
        assert "host" not in _names(headers)
        assert _get(headers, "accept") == ["application/json"]

    def test_api_key_stripped_case_insensitively(self) -> None:
        headers = build_upstream_headers([("x-api-KEY", "k")], client_ip=None, request_id="r")
        assert "x-api-key" not in _names(headers)

    def test_hop_by_hop_and_connection_tokens(self) -> None:
        headers = build_upstream_headers(
            [
                ("Connection", "keep-alive, X-Private-Hop"),
                ("Keep-Alive", "timeout=5"),
                ("TE", "trailers"),
                ("Upgrade", "h2c"),
                ("X-Private-Hop", "1"),
                ("X-Kept", "yes"),
            ],
            client_ip=None,
            request_id="r",
        )
        names = _names(headers)
        for dropped in ("connection", "keep-alive", "te", "upgrade", "x-private-hop"):
            assert dropped not in names
        assert "x-kept" in names

    def test_client_address_headers(self) -> None:
        headers = build_upstream_headers(
            [("X-Forwarded-For", "203.0.113.9"), ("X-Real-IP", "1.1.1.1")],
            client_ip="10.0.0.5",
            request_id="r",
        )
        assert _get(headers, "x-real-ip") == ["10.0.0.5"]
        assert _get(headers, "x-forwarded-for") == ["203.0.113.9, 10.0.0.5"]

    def test_request_id_added_or_preserved(self) -> None:
        added = build_upstream_headers([], client_ip=None, request_id="01HGENERATED")
        assert _get(added, "x-request-id") == ["01HGENERATED"]

        kept = build_upstream_headers([("X-Request-ID", "caller-id")], client_ip=None, request_id="01HGENERATED")
        assert _get(kept, "x-request-id") == ["caller-id"]

    def test_stream_framing_keeps_content_length(self) -> None:
        headers = build_upstream_headers(
            [("Content-Length", "42"), ("Content-Type", "application/octet-stream")],
            client_ip=None,
            request_id="r",
        )
        assert _get(headers, "content-length") == ["42"]

    def test_reencoded_framing_recomputes_length(self) -> None:
        headers = build_upstream_headers(
            [("Content-Length", "99"), ("Expect", "100-continue"), ("Content-Type", "application/json")],
            client_ip=None,
            request_id="r",
            framing=BodyFraming.REENCODED,
            content_length=13,
        )
        assert _get(headers, "content-length") == ["13"]
        assert "expect" not in _names(headers)
        assert _get(headers, "content-type") == ["application/json"]

    def test_raw_framing_single_content_length(self) -> None:
        headers = build_upstream_headers(
            [("Content-Length", "7")],
            client_ip=None,
            request_id="r",
            framing=BodyFraming.RAW,
            content_length=7,
        )
        assert _get(headers, "content-length") == ["7"]

    def test_repeated_headers_survive(self) -> None:
        headers = build_upstream_headers(
            [("Accept", "text/html"), ("Accept", "application/json")],
            client_ip=None,
            request_id="r",
        )
        assert _get(headers, "accept") == ["text/html", "application/json"]


class TestClientResponseHeaders:
    def test_user_header_and_hop_by_hop(self) -> None:
        upstream = httpx.Headers(
            [
                ("Content-Type", "application/json"),
                ("Content-Length", "17"),
                ("Transfer-Encoding", "chunked"),
                ("Connection", "close"),
                ("Set-Cookie", "a=1"),
                ("Set-Cookie", "b=2"),
            ]
        )
        headers = build_client_response_headers(upstream, user_id=42)
        names = _names(headers)
        assert "transfer-encoding" not in names
        assert "connection" not in names
        assert _get(headers, "content-length") == ["17"]
        assert _get(headers, "set-cookie") == ["a=1", "b=2"]
        assert _get(headers, "x-authproxy-user") == ["42"]

    def test_upstream_cannot_spoof_user_header(self) -> None:
        upstream = httpx.Headers([("X-AuthProxy-User", "999")])
        headers = build_client_response_headers(upstream, user_id=7)
        assert _get(headers, "x-authproxy-user") == ["7"]
