# chatpush/infra/http_client.py
"""
Shared aiohttp session for outbound push requests.

One session per process keeps TLS connections to the FCM endpoint alive
across sends. A fan-out over many tokens shares at most
SENDER_POOL_LIMIT sockets; dispatch_max_concurrency bounds the number of
in-flight sends above that.
"""
from __future__ import annotations

import aiohttp

from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)

SENDER_POOL_LIMIT = 100
SENDER_TIMEOUT = aiohttp.ClientTimeout(total=25, connect=5)

_session: aiohttp.ClientSession | None = None


def get_sender_session() -> aiohttp.ClientSession:
    """Created lazily on first send, inside the running event loop."""
    global _session

    if _session is None or _session.closed:
        _session = aiohttp.ClientSession(
            timeout=SENDER_TIMEOUT,
            connector=aiohttp.TCPConnector(limit=SENDER_POOL_LIMIT, keepalive_timeout=30),
        )
        logger.debug(f"Sender HTTP session created (limit={SENDER_POOL_LIMIT})")
    return _session


async def close_sender_session() -> None:
    """Call once during application shutdown."""
    global _session

    if _session is not None and not _session.closed:
        await _session.close()
        logger.debug("Sender HTTP session closed")
    _session = None
