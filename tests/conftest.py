"""Shared test fixtures for automator.

Fixture tiers:
  test_config : Config with short timings, isolated browser state dir
  lease_store : fresh in-memory lease store
  clock       : hand-advanced epoch-ms clock for election tests
  observer    : FakeObserver standing in for the page XHR hook
  task_server : aiohttp TestServer speaking the task server protocol
"""
from __future__ import annotations

from pathlib import Path
from typing import AsyncGenerator

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from automator.config import Config
from automator.lease import MemoryLeaseStore
from tests.helpers import FakeClock, FakeObserver

# ---------------------------------------------------------------------------
# Config fixture
# ---------------------------------------------------------------------------

@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Isolated Config for a single test: tmp state dir, short timings."""
    return Config(
        election_interval=0.05,
        startup_delay=0,
        ready_poll=0.01,
        ready_required=False,
        poll_interval=0.02,
        arm_timeout=1.0,
        grace_period=0.1,
        element_timeout=0.1,
        element_poll=0.01,
        state_dir=tmp_path / "browser",
    )


# ---------------------------------------------------------------------------
# Election fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def lease_store() -> MemoryLeaseStore:
    return MemoryLeaseStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Capture fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def observer() -> FakeObserver:
    return FakeObserver()


# ---------------------------------------------------------------------------
# Task server fixture
# ---------------------------------------------------------------------------

class TaskServerState:
    """What the fake task server has queued and received."""

    def __init__(self) -> None:
        self.jobs: list[dict] = []
        self.chunks: list[dict] = []
        self.reports: list[dict] = []
        self.job_response: str | bytes | None = None  # raw override for /get_prompt_job
        self.report_status = 200
        self._url = ""

    @property
    def url(self) -> str:
        return self._url

    def chunks_for(self, task_id: str) -> list[str]:
        return [c["chunk"] for c in self.chunks if c["task_id"] == task_id]


def _make_app(state: TaskServerState) -> web.Application:
    async def get_prompt_job(request: web.Request) -> web.Response:
        if isinstance(state.job_response, bytes):
            return web.Response(body=state.job_response, content_type="application/json")
        if state.job_response is not None:
            return web.Response(text=state.job_response)
        if state.jobs:
            return web.json_response({"status": "success", "job": state.jobs.pop(0)})
        return web.json_response({"status": "empty"})

    async def stream_chunk(request: web.Request) -> web.Response:
        state.chunks.append(await request.json())
        return web.json_response({"status": "ok"})

    async def report_result(request: web.Request) -> web.Response:
        state.reports.append(await request.json())
        return web.json_response({"status": "ok"}, status=state.report_status)

    app = web.Application()
    app.router.add_get("/get_prompt_job", get_prompt_job)
    app.router.add_post("/stream_chunk", stream_chunk)
    app.router.add_post("/report_result", report_result)
    return app


@pytest.fixture
async def task_server() -> AsyncGenerator[TaskServerState, None]:
    state = TaskServerState()
    server = TestServer(_make_app(state))
    await server.start_server()
    state._url = f"http://{server.host}:{server.port}"
    yield state
    await server.close()
