"""
Fire-and-forget tasks that outlive the request that scheduled them.

The event loop only keeps weak references to tasks, so running tasks are
held here until they finish. Failures are logged, never re-raised.
"""
import asyncio
import logging
from typing import Coroutine, Optional, Set

logger = logging.getLogger(__name__)

_tasks: Set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _tasks.discard(task)
    if task.cancelled():
        logger.info(f"Background task {task.get_name()} cancelled")
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Background task {task.get_name()} failed: {error}", exc_info=error)


def spawn(coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
    """Schedule a coroutine on the running loop without awaiting it."""
    task = asyncio.create_task(coro, name=name)
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending() -> int:
    return len(_tasks)


async def drain(timeout: Optional[float] = None) -> None:
    """Wait for scheduled tasks; those still running after the timeout are left alone."""
    if not _tasks:
        return
    await asyncio.wait(set(_tasks), timeout=timeout)
