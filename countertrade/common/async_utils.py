from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    timeout_seconds: float | None = None,
    **fields: Any,
) -> T | None:
    """Run a best-effort step; failures are logged and ``default`` is returned."""
    try:
        result = action()
        if inspect.isawaitable(result):
            if timeout_seconds is not None:
                return await asyncio.wait_for(result, timeout=timeout_seconds)
            return await result
        return result
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error) or type(error).__name__,
            **fields,
        )
        return default


async def sleep_with_stop(stop_event: asyncio.Event | None, timeout_seconds: float) -> bool:
    """Sleep up to ``timeout_seconds``; returns True when ``stop_event`` fired first."""
    if timeout_seconds <= 0:
        return bool(stop_event is not None and stop_event.is_set())
    if stop_event is None:
        await asyncio.sleep(timeout_seconds)
        return False

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        return False
    return True
