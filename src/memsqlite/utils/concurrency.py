"""
Helpers for running blocking database work from asyncio code.
"""

import asyncio
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_to_completion(func: Callable[..., T], *args: Any) -> T:
    """
    Run blocking work in a thread; on cancellation wait for it to finish.

    The thread may own an open transaction on a pooled connection, so the
    caller must not release that connection (or any lock) until the work
    has committed or rolled back.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        raise
