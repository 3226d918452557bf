"""uvicorn entry point for authproxy.

Usage:
    authproxy [CONFIG]          # via pyproject.toml [project.scripts]
    python -m authproxy.run [CONFIG]

CONFIG is exported as AUTHPROXY_CONFIG so the application lifespan loads the
same file that supplied the bind address.  Request lines are logged by the
proxy itself, so uvicorn's access log stays off.
"""

from __future__ import annotations

import os
import sys
from typing import Optional, Sequence

import uvicorn

from authproxy.config import load_config

# Matches the upstream pool size (POOL_MAX_CONNECTIONS in proxy/engine.py).
UVICORN_LIMIT_CONCURRENCY: int = 100

UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Start the proxy.

    Raises:
        SystemExit: Propagated from load_config() on invalid configuration.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    if args:
        os.environ["AUTHPROXY_CONFIG"] = os.path.abspath(os.path.expanduser(args[0]))

    config = load_config()

    uvicorn.run(
        "authproxy.main:app",
        host=config.proxy.host,
        port=config.proxy.port,
        log_level=config.log_level.lower(),
        access_log=False,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
