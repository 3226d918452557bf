"""HTTP header processing for forwarded requests and relayed responses.

  - build_upstream_headers(): strips the API key header and hop-by-hop headers,
    sets the caller address headers and the request id, and applies the
    body-path specific framing rules (see ``BodyFraming``).

  - build_client_response_headers(): strips hop-by-hop headers from the upstream
    response and adds the resolved user identity header.

RFC 7230 §6.1: hop-by-hop headers, including any listed in ``Connection``,
must not be forwarded by intermediaries.
"""

from __future__ import annotations

import enum
from typing import Iterable, Optional

import httpx

from authproxy.constants import API_KEY_HEADER, REQUEST_ID_HEADER, USER_HEADER

# ─── Constants ────────────────────────────────────────────────────────────────

HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Never forwarded upstream regardless of body path.
# host is derived from the upstream URL; the address headers are rebuilt.
_REQUEST_STRIP: frozenset[str] = frozenset(
    {API_KEY_HEADER.lower(), "host", "x-real-ip"}
)

# Framing headers replaced when a body is re-serialized.
_REENCODE_STRIP: frozenset[str] = frozenset({"content-length", "transfer-encoding", "expect"})


class BodyFraming(enum.Enum):
    """How the forwarded body is framed, which decides content-length handling."""

    STREAM = "stream"  # original stream piped through; keep the caller's content-length
    RAW = "raw"  # exact captured bytes; content-length recomputed
    REENCODED = "reencoded"  # structured value re-serialized; content-length recomputed


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    tokens: set[str] = set()
    for name, value in headers:
        if name.lower() == "connection":
            tokens.update(token.strip().lower() for token in value.split(",") if token.strip())
    return tokens


# ─── Public API ───────────────────────────────────────────────────────────────


def build_upstream_headers(
    request_headers: Iterable[tuple[str, str]],
    *,
    client_ip: Optional[str],
    request_id: str,
    framing: BodyFraming = BodyFraming.STREAM,
    content_length: Optional[int] = None,
) -> list[tuple[str, str]]:
    """Build the header list sent to the upstream.

    Args:
        request_headers: (name, value) pairs from the incoming request.
        client_ip:       Caller address; becomes ``X-Real-IP`` and is appended
                         to ``X-Forwarded-For``.
        request_id:      Sent as ``X-Request-ID`` unless the caller sent one.
        framing:         Body path chosen by the forwarder.
        content_length:  Byte length of the body for RAW / REENCODED framing.

    Returns:
        A list of pairs, so repeated headers survive.
    """
    request_headers = list(request_headers)
    dropped = HOP_BY_HOP_HEADERS | _REQUEST_STRIP | _connection_tokens(request_headers)
    if framing is not BodyFraming.STREAM:
        dropped = dropped | _REENCODE_STRIP

    headers: list[tuple[str, str]] = []
    forwarded_for: list[str] = []
    has_request_id = False

    for name, value in request_headers:
        lower_name = name.lower()
        if lower_name in dropped:
            continue
        if lower_name == "x-forwarded-for":
            forwarded_for.append(value)
            continue
        if lower_name == REQUEST_ID_HEADER.lower():
            has_request_id = True
        headers.append((name, value))

    if client_ip:
        headers.append(("X-Real-IP", client_ip))
        forwarded_for.append(client_ip)
    if forwarded_for:
        headers.append(("X-Forwarded-For", ", ".join(forwarded_for)))
    if not has_request_id:
        headers.append((REQUEST_ID_HEADER, request_id))
    if framing is not BodyFraming.STREAM and content_length is not None:
        headers.append(("Content-Length", str(content_length)))

    return headers


def build_client_response_headers(
    upstream_headers: httpx.Headers,
    user_id: int,
) -> list[tuple[str, str]]:
    """Copy upstream response headers for the caller.

    Hop-by-hop headers are dropped; ``content-length`` and ``content-encoding``
    are kept because the body is relayed as the raw upstream bytes.
    """
    pairs = list(upstream_headers.multi_items())
    dropped = HOP_BY_HOP_HEADERS | _connection_tokens(pairs) | {USER_HEADER.lower()}
    headers = [(name, value) for name, value in pairs if name.lower() not in dropped]
    headers.append((USER_HEADER, str(user_id)))
    return headers
