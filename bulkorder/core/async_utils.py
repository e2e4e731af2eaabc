"""
Async utilities for wrapping synchronous service calls.

Provides run_sync() to offload blocking I/O (database writes) to threads,
and call_with_timeout() to bound a single outbound capability call.
"""

import asyncio
import functools
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from bulkorder.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_sync(func: Callable[..., T], *args: Any, timeout: float = 30, **kwargs: Any) -> T:
    """
    Run a synchronous function in a thread without blocking the event loop.

    Args:
        func: Synchronous callable to execute.
        *args: Positional arguments forwarded to func.
        timeout: Maximum seconds to wait (default 30).

    Returns:
        The return value of func(*args, **kwargs).

    Raises:
        TimeoutError: If execution exceeds the timeout.
        Exception: Any exception raised by func propagates unchanged.
    """
    name = getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))
    if kwargs:
        func = functools.partial(func, **kwargs)
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(func, *args),
            timeout=timeout,
        )
        elapsed = (time.perf_counter() - start) * 1000
        logger.debug("run_sync %s completed in %.2fms", name, elapsed)
        return result
    except asyncio.TimeoutError:
        elapsed = (time.perf_counter() - start) * 1000
        raise TimeoutError(
            f"{name} timed out after {elapsed:.0f}ms (limit {timeout}s)"
        )


async def call_with_timeout(
    operation: str,
    call: Callable[[], Awaitable[T]],
    timeout: float,
) -> T:
    """Await one capability call under its own deadline.

    Timeouts become ExternalServiceError("BLK-EXT-002"). Any other failure
    that is not already a BulkOrderError becomes ExternalServiceError("BLK-EXT-001").
    """
    try:
        return await asyncio.wait_for(call(), timeout=timeout)
    except asyncio.TimeoutError:
        raise ExternalServiceError(
            "BLK-EXT-002",
            detail=f"{operation} timed out after {timeout}s",
            context={"operation": operation},
        )
    except ExternalServiceError:
        raise
    except Exception as exc:
        raise ExternalServiceError(
            "BLK-EXT-001",
            detail=f"{operation} failed: {exc}",
            context={"operation": operation, "exception": type(exc).__name__},
        ) from exc
