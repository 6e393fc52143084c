import asyncio
import logging
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)

# HTTP/2 needs the optional 'h2' package
try:
    import h2  # type: ignore  # noqa: F401
    _HTTP2_AVAILABLE = True
except ImportError:
    _HTTP2_AVAILABLE = False
    logger.debug("HTTP/2 disabled: 'h2' package not installed.")


def create_async_client(base_url: str, headers: Optional[Dict[str, str]] = None,
                        timeout: float = 10.0,
                        transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Pooled async client shared by every request a store makes."""
    limits = httpx.Limits(
        max_keepalive_connections=20,
        max_connections=100,
        keepalive_expiry=30.0
    )
    return httpx.AsyncClient(
        base_url=base_url,
        headers=headers or {},
        limits=limits,
        timeout=httpx.Timeout(timeout=timeout, connect=min(timeout, 5.0)),
        follow_redirects=True,
        http2=_HTTP2_AVAILABLE and transport is None,
        transport=transport,
    )


async def request_with_retry(client: httpx.AsyncClient, method: str, url: str,
                             retries: int = 3, backoff: float = 0.5, **kwargs) -> httpx.Response:
    """Send a request, retrying transport errors with exponential backoff.

    Only use this for idempotent requests. The last transport error is
    re-raised once the attempts run out.
    """
    for attempt in range(retries):
        try:
            return await client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            if attempt >= retries - 1:
                raise
            wait_time = backoff * (2 ** attempt)
            logger.warning(f"{method} {url} failed ({exc!r}), retrying in {wait_time:.2f}s")
            await asyncio.sleep(wait_time)
    raise RuntimeError("retries must be at least 1")
