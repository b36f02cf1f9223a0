# sync_bridge.py

from __future__ import annotations

import asyncio
import contextvars
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, TypeVar

T = TypeVar("T")

_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="tool-env-sync")


async def _await(aw: Awaitable[T]) -> T:
    return await aw


def run_async_sync(aw: Awaitable[T]) -> T:
    """
    Drive an awaitable to completion from sync code.

    - If no event loop is running in this thread: uses asyncio.run().
    - If an event loop IS running (e.g., a sync callback invoked from async
      code): runs it in a new thread with its own event loop.
    """
    coro: Any = aw if asyncio.iscoroutine(aw) else _await(aw)
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop in this thread → safe to use asyncio.run
        return asyncio.run(coro)

    # Running loop exists in this thread → run in another thread,
    # carrying the caller's context variables along
    ctx = contextvars.copy_context()
    fut = _EXECUTOR.submit(ctx.run, asyncio.run, coro)
    return fut.result()
