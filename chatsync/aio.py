import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Coroutine
from typing import Any, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def ensure_task(coro: Coroutine[Any, Any, T], *, name: Optional[str] = None) -> "asyncio.Task[T]":
    return asyncio.create_task(coro, name=name)


async def cancel_suppress(task: "Optional[asyncio.Task[object]]") -> None:
    if not task or task.done():
        return
    # Never cancel/await the current task, it would raise "Task cannot await on itself"
    if task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def logged(aw: Awaitable[object], description: str) -> None:
    """Await a background job; failures are logged, never raised."""
    try:
        await aw
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception(f"Background task failed: {description}")
