"""Request body capture for the proxy path.

JSON and form-encoded bodies of bounded size are read once and decoded so the
service can inspect them.  The exact bytes the caller sent are always kept
alongside the decoded value, and those bytes are what the forwarder sends:
decoding never changes what reaches the upstream.

Everything else (other content types, unknown or oversized lengths, chunked
uploads) is not read here and is streamed to the upstream untouched.

``encode_parsed_body`` re-serializes a decoded value for the one case where no
raw bytes exist (a body constructed or rewritten inside the service).
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode

from starlette.requests import Request

from authproxy.constants import MAX_CAPTURE_BODY_BYTES
from authproxy.utils.logger import get_logger

logger = get_logger(__name__)

JSON = "json"
FORM = "form"


@dataclass
class CapturedBody:
    kind: str  # "json" | "form"
    raw: Optional[bytes]
    parsed: Any = None


def body_kind(content_type: Optional[str]) -> Optional[str]:
    """Classify a content-type header as ``json``, ``form`` or None."""
    if not content_type:
        return None
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type == "application/json" or media_type.endswith("+json"):
        return JSON
    if media_type == "application/x-www-form-urlencoded":
        return FORM
    return None


def decode_form(raw: bytes) -> dict[str, Any]:
    """Decode a urlencoded body.  Repeated keys become lists, order preserved."""
    decoded: dict[str, Any] = {}
    for key, value in parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True):
        if key in decoded:
            existing = decoded[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                decoded[key] = [existing, value]
        else:
            decoded[key] = value
    return decoded


def _decode(kind: str, raw: bytes) -> Any:
    if kind == JSON:
        try:
            return json.loads(raw) if raw else None
        except (UnicodeDecodeError, ValueError):
            logger.debug("body_not_json", size=len(raw))
            return None
    return decode_form(raw)


async def capture_body(request: Request) -> Optional[CapturedBody]:
    """Read and decode the body when it is JSON or form and small enough.

    Returns None when the body should be streamed instead.  Once this returns
    a CapturedBody the request stream has been consumed.
    """
    kind = body_kind(request.headers.get("content-type"))
    if kind is None:
        return None

    content_length = request.headers.get("content-length")
    if content_length is None:
        return None
    try:
        declared = int(content_length)
    except ValueError:
        return None
    if declared < 0 or declared > MAX_CAPTURE_BODY_BYTES:
        return None

    raw = await request.body()
    parsed = _decode(kind, raw)
    request.state.parsed_body = parsed
    return CapturedBody(kind=kind, raw=raw, parsed=parsed)


def encode_parsed_body(kind: str, value: Any) -> bytes:
    """Serialize a decoded body back to bytes.

    JSON uses compact separators; forms use ``urlencode`` with list values
    expanded into repeated keys.
    """
    if kind == JSON:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if kind == FORM:
        return urlencode(value, doseq=True).encode("ascii")
    raise ValueError(f"unsupported body kind: {kind!r}")
