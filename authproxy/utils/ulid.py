"""Request identifiers for authproxy.

Every proxied request gets a 26-character ULID used as:
  - the ``request_id`` field on all structured log lines for that request
  - the ``X-Request-ID`` header sent to the upstream (unless the caller sent one)

ULIDs sort by creation time, so log lines and upstream access logs can be
correlated and ordered without a separate timestamp.

Uses the ``python-ulid`` library.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Return a new ULID as a 26-character Crockford Base32 string.

    Example::

        request_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
    """
    return str(ULID())
