"""Proxy engine: catch-all route, admission, and upstream forwarding.

Request flow for every path not claimed by the service's own routers:

  1. Request id generated (ULID) and bound to the log context
  2. AdmissionGuard.admit()   → 404 / 401 / 429 before any upstream contact
  3. capture_body()           → JSON / form bodies read once, raw bytes kept
  4. Upstream request built   → API key stripped, caller address attached
  5. send(stream=True) bounded by upstream.timeout_s
                              → 504 upstream_timeout / 502 upstream_unavailable;
                                a caller that leaves first cancels the send (499)
  6. Response relayed         → status + headers (minus hop-by-hop) + X-AuthProxy-User,
                                body streamed chunk by chunk, never buffered

Body paths (see ``select_body``):
  - RAW:       captured bytes forwarded exactly as received
  - REENCODED: a decoded value with no raw bytes is re-serialized
  - STREAM:    anything else is piped from ``request.stream()``

Upstream HTTP error statuses (4xx/5xx) are relayed verbatim as ordinary
responses.  Only transport-level failures become 502/504, with opaque codes;
the details go to the log.  There is no retry.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncIterator, Optional, Union

import httpx
from fastapi import APIRouter, Request, Response
from fastapi.responses import StreamingResponse

from authproxy.constants import API_KEY_HEADER
from authproxy.errors import UpstreamError, UpstreamTimeoutError
from authproxy.proxy.body import CapturedBody, capture_body, encode_parsed_body
from authproxy.proxy.guard import Admission
from authproxy.proxy.headers import (
    BodyFraming,
    build_client_response_headers,
    build_upstream_headers,
)
from authproxy.utils.logger import get_logger, set_request_id
from authproxy.utils.ulid import generate_ulid

logger = get_logger(__name__)

# ─── Router ───────────────────────────────────────────────────────────────────

router = APIRouter(tags=["proxy"])

# ─── Constants ────────────────────────────────────────────────────────────────

POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 100
POOL_KEEPALIVE_EXPIRY: float = 30.0  # seconds

PROXY_METHODS: list[str] = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]

#: How often a pending upstream send checks whether the caller is still there.
DISCONNECT_POLL_INTERVAL: float = 0.1  # seconds

#: Status recorded when the caller leaves before the upstream answers (nginx convention).
CLIENT_CLOSED_REQUEST: int = 499

BodyContent = Union[bytes, AsyncIterator[bytes], None]

# ─── httpx.AsyncClient factory ────────────────────────────────────────────────


def create_http_client(timeout_s: float = 30.0) -> httpx.AsyncClient:
    """Create the shared upstream client.

    Created once at lifespan startup and stored in ``app.state.http_client``.
    The per-operation timeout bounds each connect / read / write; the total
    round trip is bounded separately in ``forward()``.
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY,
        ),
        timeout=httpx.Timeout(timeout_s),
        follow_redirects=False,  # 3xx is relayed to the caller, not resolved
    )


# ─── Upstream request construction ────────────────────────────────────────────


def build_upstream_url(base_url: str, request: Request) -> httpx.URL:
    """Join the upstream base URL with the caller's path and query string.

    The raw (still percent-encoded) path is used so encoded characters reach
    the upstream unchanged.
    """
    raw_path = request.scope.get("raw_path")
    # Some ASGI servers leave the query string on raw_path.
    path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else request.url.path
    url = base_url.rstrip("/") + path
    query = request.url.query
    if query:
        url = f"{url}?{query}"
    return httpx.URL(url)


def _has_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    content_length = request.headers.get("content-length")
    return content_length is not None and content_length.strip() not in ("", "0")


def select_body(request: Request, captured: Optional[CapturedBody]) -> tuple[BodyContent, BodyFraming, Optional[int]]:
    """Choose the bytes to forward and how they are framed.

    Returns:
        (content, framing, content_length) where content_length is set for
        RAW and REENCODED framing.
    """
    if captured is not None and captured.raw is not None:
        return captured.raw, BodyFraming.RAW, len(captured.raw)
    if captured is not None and captured.parsed is not None:
        encoded = encode_parsed_body(captured.kind, captured.parsed)
        return encoded, BodyFraming.REENCODED, len(encoded)
    if not _has_body(request):
        return None, BodyFraming.STREAM, None
    return request.stream(), BodyFraming.STREAM, None


# ─── Forwarding ───────────────────────────────────────────────────────────────


async def _relay(upstream_response: httpx.Response, started: float) -> AsyncIterator[bytes]:
    """Yield upstream body chunks as they arrive; always close the upstream response.

    A client disconnect cancels this generator, and the ``finally`` releases
    the upstream connection instead of reading the rest of the body.
    """
    sent = 0
    try:
        if upstream_response.is_stream_consumed:
            # Transports that buffer the body hand over an already-read response.
            body = upstream_response.content
            if body:
                sent = len(body)
                yield body
        else:
            async for chunk in upstream_response.aiter_raw():
                sent += len(chunk)
                yield chunk
    except httpx.TransportError as exc:
        # Headers are already out; the caller sees a truncated body.
        logger.warning(
            "upstream_stream_interrupted",
            error_type=type(exc).__name__,
            error=str(exc),
            bytes_sent=sent,
        )
    finally:
        await upstream_response.aclose()
        logger.info(
            "upstream_response_closed",
            status_code=upstream_response.status_code,
            bytes_sent=sent,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )


async def _wait_for_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)


async def _send_upstream(
    http_client: httpx.AsyncClient,
    upstream_request: httpx.Request,
    request: Request,
    *,
    timeout_s: float,
    watch_disconnect: bool,
) -> Optional[httpx.Response]:
    """Send with the round-trip budget, abandoning the send if the caller leaves.

    Returns None when the caller disconnected before response headers arrived;
    the pending upstream send is then cancelled.  ``watch_disconnect`` must be
    False while the request body is still being streamed: polling for a
    disconnect reads from the same ASGI receive channel.
    """
    sending = asyncio.wait_for(http_client.send(upstream_request, stream=True), timeout=timeout_s)
    if not watch_disconnect:
        return await sending

    send = asyncio.ensure_future(sending)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        await asyncio.wait({send, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()
        if not send.done():
            send.cancel()

    if send.done():
        return send.result()

    # Cancelled above, but the response may have landed in the same iteration.
    await asyncio.wait({send})
    if not send.cancelled() and send.exception() is None:
        await send.result().aclose()
    return None


async def forward(
    request: Request,
    admission: Admission,
    *,
    http_client: httpx.AsyncClient,
    base_url: str,
    timeout_s: float,
    request_id: str,
    captured: Optional[CapturedBody] = None,
) -> Response:
    """Send an admitted request upstream and stream the response back.

    Raises:
        UpstreamTimeoutError: no response headers within ``timeout_s``.
        UpstreamError:        connect / protocol failure or invalid upstream URL.
    """
    content, framing, content_length = select_body(request, captured)
    client_ip = request.client.host if request.client else None
    headers = build_upstream_headers(
        request.headers.items(),
        client_ip=client_ip,
        request_id=request_id,
        framing=framing,
        content_length=content_length,
    )

    try:
        url = build_upstream_url(base_url, request)
        upstream_request = http_client.build_request(
            method=request.method,
            url=url,
            headers=headers,
            content=content,
        )
    except httpx.InvalidURL as exc:
        logger.error("invalid_upstream_url", base_url=base_url, error=str(exc))
        raise UpstreamError() from exc

    started = time.perf_counter()
    try:
        upstream_response = await _send_upstream(
            http_client,
            upstream_request,
            request,
            timeout_s=timeout_s,
            watch_disconnect=framing is not BodyFraming.STREAM or content is None,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        logger.warning(
            "upstream_timeout",
            upstream_host=url.host,
            timeout_s=timeout_s,
            error_type=type(exc).__name__,
        )
        raise UpstreamTimeoutError() from exc
    except httpx.TransportError as exc:
        logger.warning(
            "upstream_unavailable",
            upstream_host=url.host,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise UpstreamError() from exc

    if upstream_response is None:
        logger.info(
            "client_disconnected",
            upstream_host=url.host,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    logger.info(
        "request_proxied",
        method=request.method,
        path=request.url.path,
        user_id=admission.user_id,
        status_code=upstream_response.status_code,
        body_path=framing.value,
    )

    response = StreamingResponse(
        content=_relay(upstream_response, started),
        status_code=upstream_response.status_code,
    )
    response.raw_headers = [
        (name.encode("latin-1"), value.encode("latin-1"))
        for name, value in build_client_response_headers(upstream_response.headers, admission.user_id)
    ]
    return response


# ─── Proxy handler ────────────────────────────────────────────────────────────


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_handler(request: Request, path: str) -> Response:
    """Catch-all: admit, then forward to the configured upstream.

    Readiness is enforced by the router-level ``require_ready`` dependency
    added in ``create_app()``.  Guard rejections propagate as AuthProxyError
    and are rendered by the app-level exception handler.
    """
    state: Any = request.app.state
    request_id = generate_ulid()
    set_request_id(request_id)

    admission = await state.guard.admit(
        path=request.url.path,
        method=request.method,
        api_key=request.headers.get(API_KEY_HEADER),
        now=state.clock(),
    )

    captured = await capture_body(request)

    return await forward(
        request,
        admission,
        http_client=state.http_client,
        base_url=state.config.upstream.base_url,
        timeout_s=state.config.upstream.timeout_s,
        request_id=request_id,
        captured=captured,
    )
