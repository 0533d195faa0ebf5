# deadline.py — Per-request time budget for service calls
import asyncio
import os
from typing import Awaitable, Optional, TypeVar

from exceptions import DeadlineExceededError

REQUEST_DEADLINE_SECONDS = float(os.getenv("REQUEST_DEADLINE_SECONDS", "5"))

T = TypeVar("T")


async def with_deadline(awaitable: Awaitable[T], seconds: Optional[float] = None) -> T:
    """Await ``awaitable``, cancelling it once the request deadline passes.

    Cancellation unwinds through ``database.transaction``, so a write that
    runs out of time is rolled back.
    """
    timeout = REQUEST_DEADLINE_SECONDS if seconds is None else seconds
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise DeadlineExceededError(f"request did not finish within {timeout:g}s", timeout=timeout) from None
