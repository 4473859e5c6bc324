"""Test helpers for automator: in-process fakes for the page-facing collaborators."""
from __future__ import annotations

import asyncio
import socket
from typing import Callable

from automator.observer import StreamListener
from automator.task_client import Job


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    """Poll ``predicate`` every 10ms; False if it never held within ``timeout``."""
    loop = asyncio.get_event_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(0.01)
    return True


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RacyLeaseStore:
    """MemoryLeaseStore whose reads yield to the loop after reading.

    Two ticks gathered together both read before either writes, which is
    the window the elector has to tolerate.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        value = self.data.get(key)
        await asyncio.sleep(0)
        return value

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FakeObserver:
    """NetworkObserver driven by the test: fire events with the helper methods.

    Events fired while nothing is installed are dropped, as the page hook
    drops them after restore().
    """

    def __init__(self, fail_install: bool = False) -> None:
        self.listener: StreamListener | None = None
        self.signature: str | None = None
        self.installs = 0
        self.restores = 0
        self.fail_install = fail_install

    async def install(self, signature: str, listener: StreamListener) -> None:
        if self.fail_install:
            raise RuntimeError("page is gone")
        self.signature = signature
        self.listener = listener
        self.installs += 1

    def restore(self) -> None:
        if self.listener is not None:
            self.restores += 1
        self.listener = None

    def request(self) -> None:
        if self.listener:
            self.listener.on_request()

    def progress(self, text: str) -> None:
        if self.listener:
            self.listener.on_progress(text)

    def load(self) -> None:
        if self.listener:
            self.listener.on_load()

    def error(self, cause: str = "XHR request failed") -> None:
        if self.listener:
            self.listener.on_error(cause)

    def abort(self) -> None:
        if self.listener:
            self.listener.on_abort()


class FakeDom:
    """DomCollaborator; ``on_submit`` runs when the submit click succeeds."""

    def __init__(
        self,
        has_input: bool = True,
        submit_enabled: bool = True,
        on_submit: Callable[[], None] | None = None,
    ) -> None:
        self.has_input = has_input
        self.submit_enabled = submit_enabled
        self.on_submit = on_submit
        self.filled: list[str] = []
        self.clicks = 0

    async def find_input(self) -> object | None:
        return object() if self.has_input else None

    async def fill(self, element: object, text: str) -> None:
        self.filled.append(text)

    async def submit(self) -> bool:
        if not self.submit_enabled:
            return False
        self.clicks += 1
        if self.on_submit:
            self.on_submit()
        return True


class FakeTaskClient:
    """Records everything a TaskDriver sends to the task server."""

    def __init__(self, jobs: list[Job] | None = None, report_ok: bool = True) -> None:
        self.jobs = list(jobs or [])
        self.report_ok = report_ok
        self.polls = 0
        self.chunks: list[tuple[str, str]] = []
        self.reports: list[tuple[str, str, str]] = []
        self.flushes = 0

    async def get_prompt_job(self) -> Job | None:
        self.polls += 1
        return self.jobs.pop(0) if self.jobs else None

    def stream_chunk(self, task_id: str, chunk: str) -> None:
        self.chunks.append((task_id, chunk))

    async def flush(self, timeout: float = 5.0) -> bool:
        self.flushes += 1
        return True

    async def report_result(self, task_id: str, status: str, content: str = "") -> bool:
        self.reports.append((task_id, status, content))
        return self.report_ok
