"""
FastAPI middleware for request/correlation ID injection.

Injects request_id and correlation_id into contextvars so structlog
processors automatically include them in every log entry.
"""
from __future__ import annotations

import ipaddress
import logging
import time
import uuid
from typing import Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from bulkorder.config import settings
from bulkorder.core.structured_logging import correlation_id_var, request_id_var

logger = logging.getLogger(__name__)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Inject request_id / correlation_id into contextvars for every request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        # Accept inbound headers or generate UUIDs
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        corr_id = request.headers.get("x-correlation-id") or uuid.uuid4().hex

        rid_token = request_id_var.set(req_id)
        cid_token = correlation_id_var.set(corr_id)

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            status_code = response.status_code if response else None
            logger.info(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path_template": request.url.path,
                    "http.status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )
            request_id_var.reset(rid_token)
            correlation_id_var.reset(cid_token)

        # Echo IDs back in response headers
        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response


def _is_trusted(address: str, proxies: Sequence[str]) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    for proxy in proxies:
        try:
            if ip in ipaddress.ip_network(proxy, strict=False):
                return True
        except ValueError:
            logger.warning("Ignoring invalid trusted proxy entry %r", proxy)
    return False


def client_key_for(request: Request, trusted_proxies: Optional[Sequence[str]] = None) -> str:
    """Rate-limit and audit key for a request.

    The peer address, unless the peer is a trusted proxy: then the nearest
    X-Forwarded-For hop that is not itself a trusted proxy.
    """
    proxies = settings.trusted_proxies if trusted_proxies is None else trusted_proxies
    peer = request.client.host if request.client else "unknown"
    if not proxies or not _is_trusted(peer, proxies):
        return peer

    hops = [hop.strip() for hop in request.headers.get("x-forwarded-for", "").split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _is_trusted(hop, proxies):
            return hop
    return hops[0] if hops else peer
