"""
ScanMaster - Store Call Helpers

Every store call made by a service is bounded by STORE_TIMEOUT_SECONDS.
Blocking work (SQL, bcrypt) runs on Starlette's threadpool so the event
loop stays free.

Cancellation is never intercepted: asyncio.CancelledError propagates.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger
from starlette.concurrency import run_in_threadpool

from scanmaster.config import settings
from scanmaster.errors import AuthError, Timeout


T = TypeVar("T")


def _deadline(timeout: Optional[float]) -> float:
    return settings.STORE_TIMEOUT_SECONDS if timeout is None else timeout


async def run_blocking(func: Callable[..., T], *args, timeout: Optional[float] = None, **kwargs) -> T:
    """
    Run a blocking callable on the threadpool under a deadline.

    Raises:
        Timeout: The deadline passed before the call returned
    """
    deadline = _deadline(timeout)
    try:
        return await asyncio.wait_for(run_in_threadpool(func, *args, **kwargs), deadline)
    except asyncio.TimeoutError as exc:
        name = getattr(func, "__qualname__", repr(func))
        raise Timeout(f"{name} exceeded {deadline}s deadline") from exc


async def bounded(awaitable: Awaitable[T], operation: str, timeout: Optional[float] = None) -> T:
    """Await a Session Store coroutine under a deadline."""
    deadline = _deadline(timeout)
    try:
        return await asyncio.wait_for(awaitable, deadline)
    except asyncio.TimeoutError as exc:
        raise Timeout(f"session store: {operation} exceeded {deadline}s deadline") from exc


async def best_effort(awaitable: Awaitable, operation: str) -> bool:
    """
    Await a side effect whose failure must not fail the caller.

    Returns:
        True on success, False when the side effect failed (logged at WARNING)
    """
    try:
        await bounded(awaitable, operation)
        return True
    except AuthError as exc:
        logger.warning("Best-effort {} failed: {} ({})", operation, exc.message, exc.kind)
        return False
