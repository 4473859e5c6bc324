"""Leader-only work loop: pull prompt jobs, submit them, relay the stream.

One job at a time. For each job the capture is armed *before* the submit
click so the streaming request cannot slip past unobserved. Chunks go to
the task server as they arrive; the final outcome is reported once.
"""
from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog

from automator.capture import CaptureError, StreamCapture
from automator.observer import NetworkObserver
from automator.task_client import Job, ResultStatus, TaskServerClient

log = structlog.get_logger(__name__)


class DomCollaborator(Protocol):
    async def find_input(self) -> Any | None: ...

    async def fill(self, element: Any, text: str) -> None: ...

    async def submit(self) -> bool: ...


class TaskDriver:
    def __init__(
        self,
        client: TaskServerClient,
        dom: DomCollaborator,
        observer: NetworkObserver,
        target_url_part: str,
        poll_interval: float = 3.0,
        arm_timeout: float = 60.0,
        grace_period: float = 1.5,
        settle_delay: float = 0.3,
    ) -> None:
        self.client = client
        self.dom = dom
        self.target_url_part = target_url_part
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.capture = StreamCapture(
            observer,
            on_chunk=self._relay_chunk,
            arm_timeout=arm_timeout,
            grace_period=grace_period,
        )
        self.current_job: Job | None = None
        self._polling = False
        self._job_task: asyncio.Task | None = None

    async def run(self) -> None:
        """Poll for jobs until cancelled. An in-flight job outlives the loop."""
        log.info("job polling started", interval=self.poll_interval)
        try:
            while True:
                try:
                    await self.poll_once()
                except Exception as e:
                    log.error("job poll crashed", error=str(e))
                await asyncio.sleep(self.poll_interval)
        finally:
            log.info("job polling stopped")

    async def poll_once(self) -> Job | None:
        """Fetch and start one job unless one is already in flight."""
        if self.current_job is not None or self._polling:
            return None
        self._polling = True
        try:
            job = await self.client.get_prompt_job()
        finally:
            self._polling = False
        if job is None:
            return None
        self.current_job = job
        self._job_task = asyncio.get_event_loop().create_task(self.handle_job(job))
        return job

    async def wait_idle(self) -> None:
        if self._job_task is not None:
            await asyncio.gather(self._job_task, return_exceptions=True)

    def stop(self) -> None:
        if self._job_task is not None and not self._job_task.done():
            self._job_task.cancel()
        self._job_task = None
        self.capture.cancel()

    async def handle_job(self, job: Job) -> ResultStatus:
        log.info("handling job", task=job.short_id, prompt_len=len(job.prompt))
        try:
            status, content = await self._submit_and_capture(job)
        except asyncio.CancelledError:
            self.capture.cancel()
            raise
        except Exception as e:
            self.capture.cancel()
            log.error("job crashed", task=job.short_id, error=str(e))
            status, content = "failed", f"automation error: {e}"
        await self._report(job, status, content)
        return status

    async def _submit_and_capture(self, job: Job) -> tuple[ResultStatus, str]:
        # Drop a hook left armed by an earlier job before arming a new one.
        self.capture.cancel()
        completion = await self.capture.capture(self.target_url_part)
        if completion.done():
            return await self._outcome(job, completion)

        element = await self.dom.find_input()
        if element is None:
            self.capture.cancel()
            return "failed", "no usable prompt input found"
        await self.dom.fill(element, job.prompt)
        await asyncio.sleep(self.settle_delay)

        if not await self.dom.submit():
            self.capture.cancel()
            return "failed", "submit button missing or disabled"
        log.info("prompt submitted, waiting for stream", task=job.short_id)
        return await self._outcome(job, completion)

    async def _outcome(
        self, job: Job, completion: asyncio.Future[str]
    ) -> tuple[ResultStatus, str]:
        try:
            text = await completion
        except CaptureError as e:
            log.error(
                "capture failed",
                task=job.short_id,
                error=str(e),
                partial_len=len(e.partial),
            )
            return "failed", str(e)
        return "completed", text

    def _relay_chunk(self, chunk: str) -> None:
        job = self.current_job
        if job is None:
            return
        self.client.stream_chunk(job.task_id, chunk)

    async def _report(self, job: Job, status: ResultStatus, content: str) -> None:
        await self.client.flush()
        log.info("reporting result", task=job.short_id, status=status)
        ok = await self.client.report_result(job.task_id, status, content)
        if ok:
            log.info("result reported", task=job.short_id)
        else:
            log.error("result report failed", task=job.short_id)
        if self.current_job is job:
            self.current_job = None
