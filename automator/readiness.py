"""Readiness signal and bounded polling.

The readiness flag is set once by an external injector when the page is
prepared for automation; the leader consumes (reads and clears) it exactly
once before it starts pulling work.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Protocol, TypeVar

T = TypeVar("T")


class ReadinessSignal(Protocol):
    async def consume(self) -> bool:
        """Return True and clear the flag if it is set; otherwise False."""
        ...


class ReadyFlag:
    """In-process readiness flag."""

    def __init__(self, ready: bool = False) -> None:
        self._ready = ready

    def set(self) -> None:
        self._ready = True

    async def consume(self) -> bool:
        ready, self._ready = self._ready, False
        return ready


class AlwaysReady:
    """Signal used when no injector is configured."""

    async def consume(self) -> bool:
        return True


async def poll_until(
    probe: Callable[[], Awaitable[T | None]],
    interval: float,
    timeout: float | None,
) -> T | None:
    """Call ``probe`` every ``interval`` seconds until it returns a truthy value.

    Returns that value, or None once ``timeout`` seconds have passed
    (``timeout=None`` waits indefinitely).
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        result = await probe()
        if result:
            return result
        if deadline is not None and time.monotonic() >= deadline:
            return None
        await asyncio.sleep(interval)
