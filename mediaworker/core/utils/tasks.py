from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Set

from loguru import logger

# Strong references to fire-and-forget tasks until they finish.
_background: Set[asyncio.Task] = set()


def run_detached(coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task:
    """Schedule ``coro`` without awaiting it; a failure is logged under ``label``."""
    task = asyncio.ensure_future(coro)
    _background.add(task)
    task.add_done_callback(lambda t: _finished(t, label))
    return task


def _finished(task: asyncio.Task, label: str) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error(f"[tasks] {label} failed: {exc}")


def pending_detached() -> int:
    return len(_background)
