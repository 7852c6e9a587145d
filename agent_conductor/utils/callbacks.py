"""
Helpers for calling user-supplied callbacks that may be sync or async.
"""

import asyncio
import inspect
from typing import Any, Callable

from .logging import get_logger

logger = get_logger(__name__)


async def invoke_callback(fn: Callable[..., Any], *args: Any) -> Any:
    """
    Call ``fn(*args)`` without blocking the event loop.

    Coroutine functions are awaited directly. Plain callables run in the
    default thread pool; if they hand back an awaitable it is awaited on the
    loop. A thread cannot be interrupted, so cancelling the wait leaves the
    plain callable running to completion in its worker thread.
    """
    if inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, "__call__", None)):
        return await fn(*args)

    try:
        result = await asyncio.to_thread(fn, *args)
    except asyncio.CancelledError:
        logger.debug(
            "Stopped waiting for synchronous callback; it keeps running in its worker thread",
            callback=getattr(fn, "__qualname__", repr(fn)),
        )
        raise
    if inspect.isawaitable(result):
        result = await result
    return result
