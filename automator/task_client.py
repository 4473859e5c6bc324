"""HTTP client for the local task server.

Endpoints:
    GET  /get_prompt_job  -> {"status": "success", "job": {"task_id", "prompt"}}
    POST /stream_chunk    {"task_id", "chunk"}            (fire-and-forget)
    POST /report_result   {"task_id", "status", "content"}

Transport failures are logged and reported through return values; nothing
here raises on a network error and nothing is retried.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Literal

import aiohttp

log = logging.getLogger(__name__)

ResultStatus = Literal["completed", "failed"]


@dataclass(frozen=True)
class Job:
    task_id: str
    prompt: str

    @property
    def short_id(self) -> str:
        return self.task_id[-8:]


class TaskServerClient:
    def __init__(self, base_url: str, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None
        self._outbox: asyncio.Queue[dict] | None = None
        self._sender: asyncio.Task | None = None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        if self._sender is None:
            self._outbox = asyncio.Queue()
            self._sender = asyncio.get_event_loop().create_task(self._send_chunks())

    async def close(self, drain_timeout: float = 5.0) -> None:
        if not await self.flush(drain_timeout) and self._outbox is not None:
            log.warning("dropping unsent chunks", extra={"count": self._outbox.qsize()})
        if self._sender is not None:
            self._sender.cancel()
            await asyncio.gather(self._sender, return_exceptions=True)
            self._sender = None
            self._outbox = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> TaskServerClient:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("TaskServerClient not started")
        return self._session

    async def get_prompt_job(self) -> Job | None:
        """Return the next queued job, or None when idle or unreachable."""
        try:
            async with self.session.get(f"{self.base_url}/get_prompt_job") as resp:
                body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("job poll failed", extra={"error": str(e)})
            return None
        except UnicodeDecodeError:
            log.warning("job poll returned undecodable body")
            return None
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            log.warning("job poll returned invalid JSON")
            return None
        if not isinstance(data, dict) or data.get("status") != "success":
            return None
        job = data.get("job")
        if not isinstance(job, dict) or "task_id" not in job:
            return None
        return Job(task_id=str(job["task_id"]), prompt=str(job.get("prompt", "")))

    def stream_chunk(self, task_id: str, chunk: str) -> None:
        """Queue one chunk for relay; chunks are posted one at a time, in order."""
        if not chunk:
            return
        if self._outbox is None:
            raise RuntimeError("TaskServerClient not started")
        self._outbox.put_nowait({"task_id": task_id, "chunk": chunk})

    async def flush(self, timeout: float = 5.0) -> bool:
        """Wait until queued chunks have been posted. False on timeout."""
        if self._outbox is None:
            return True
        try:
            await asyncio.wait_for(self._outbox.join(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _send_chunks(self) -> None:
        outbox = self._outbox
        if outbox is None:
            raise RuntimeError("TaskServerClient not started")
        while True:
            payload = await outbox.get()
            try:
                await self._post("/stream_chunk", payload)
            finally:
                outbox.task_done()

    async def report_result(
        self, task_id: str, status: ResultStatus, content: str = ""
    ) -> bool:
        """Report the final outcome. Returns True if the server accepted it."""
        return await self._post(
            "/report_result",
            {"task_id": task_id, "status": status, "content": content},
        )

    async def _post(self, path: str, payload: dict) -> bool:
        try:
            async with self.session.post(f"{self.base_url}{path}", json=payload) as resp:
                if resp.status >= 400:
                    log.error(
                        "task server rejected request",
                        extra={"path": path, "status": resp.status},
                    )
                    return False
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("task server request failed", extra={"path": path, "error": str(e)})
            return False
