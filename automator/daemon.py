"""automator daemon: main orchestrator.

Startup sequence:
1. Logging
2. Task server client
3. Browser launch (storage state restored if present)
4. One tab per configured worker, each with its own elector and driver
5. Election loops start after the startup delay

Shutdown releases every held lease before the browser closes, so another
process can take over without waiting out the lease TTL.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable, Optional

import structlog
from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeout,
    async_playwright,
)

from automator.config import Config
from automator.driver import TaskDriver
from automator.election import LeaderElector
from automator.lease import LeaseStore, parse_record
from automator.observer import PageXhrObserver
from automator.page import PageDom, PageLeaseStore, PageReadiness
from automator.readiness import AlwaysReady, ReadinessSignal
from automator.task_client import TaskServerClient

log = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


class TabWorker:
    """Elector + driver pair bound to one browser tab."""

    def __init__(
        self,
        cfg: Config,
        page: Page,
        client: TaskServerClient,
        on_closed: Optional[Callable[[TabWorker], None]] = None,
    ) -> None:
        self.cfg = cfg
        self.page = page
        self.on_closed = on_closed
        self.observer = PageXhrObserver(page)
        self.dom = PageDom(
            page,
            cfg.input_selectors,
            cfg.submit_selector,
            timeout=cfg.element_timeout,
            poll_interval=cfg.element_poll,
        )
        self.driver = TaskDriver(
            client,
            self.dom,
            self.observer,
            cfg.target_url_part,
            poll_interval=cfg.poll_interval,
            arm_timeout=cfg.arm_timeout,
            grace_period=cfg.grace_period,
        )
        readiness: ReadinessSignal = (
            PageReadiness(page, cfg.ready_key) if cfg.ready_required else AlwaysReady()
        )
        self.elector = LeaderElector(
            PageLeaseStore(page),
            cfg.lease_key,
            work=self.driver.run,
            interval=cfg.election_interval,
            stale_factor=cfg.stale_factor,
            readiness=readiness,
            ready_poll=cfg.ready_poll,
            startup_delay=cfg.startup_delay,
        )
        self._released = False

    async def open(self) -> None:
        """Hook the page, navigate to the app and start electing."""
        await self.observer.attach()
        try:
            await self.page.goto(self.cfg.page_url, wait_until="load", timeout=60_000)
        except PlaywrightTimeout:
            log.warning("page load timed out, continuing", url=self.cfg.page_url)
        self.page.on("close", lambda _page: self._on_closed())
        self.elector.start()
        log.info("tab worker started", worker=self.elector.short_id)

    async def close(self) -> None:
        if self._released:
            return
        self._released = True
        self.driver.stop()
        await self.elector.release()

    def _on_closed(self) -> None:
        if self._released:
            return
        log.info("tab closed", worker=self.elector.short_id)
        self._released = True
        self.driver.stop()
        self.elector.stop()
        if self.on_closed:
            self.on_closed(self)


class Daemon:
    """Owns the browser, the task server client and all tab workers."""

    def __init__(self, cfg: Config) -> None:
        self.cfg = cfg
        self.client = TaskServerClient(cfg.server_url, timeout=cfg.request_timeout)
        self.workers: list[TabWorker] = []
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.client.start()
        await self._launch_browser()
        if self._context is None:
            raise RuntimeError("browser context failed to open")
        for _ in range(self.cfg.tabs):
            page = await self._context.new_page()
            worker = TabWorker(
                self.cfg, page, self.client, on_closed=self._on_worker_closed
            )
            await worker.open()
            self.workers.append(worker)
        log.info(
            "daemon started",
            tabs=len(self.workers),
            server=self.cfg.server_url,
            lease_ttl=self.cfg.lease_ttl,
        )

    async def run(self) -> None:
        """Start daemon and run until SIGTERM/SIGINT."""
        await self.start()

        loop = asyncio.get_event_loop()
        stop_event = asyncio.Event()
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)
        loop.add_signal_handler(signal.SIGINT, stop_event.set)

        await stop_event.wait()
        await self.stop()

    async def stop(self) -> None:
        """Release leases, save browser state, close everything."""
        log.info("daemon stopping")
        for worker in self.workers:
            await worker.close()
        self.workers.clear()
        await self._close_browser()
        await self.client.close()
        log.info("daemon stopped")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_worker_closed(self, worker: TabWorker) -> None:
        """A tab was closed by the user or crashed; hand its lease over."""
        if worker in self.workers:
            self.workers.remove(worker)
        if not self.workers:
            log.warning("all tabs closed, no worker left to elect")
            return
        asyncio.get_event_loop().create_task(
            self._clear_lease_of(self.workers[0].elector.store, worker.elector.worker_id)
        )

    async def _clear_lease_of(self, store: LeaseStore, worker_id: str) -> None:
        # Any surviving tab shares the same localStorage.
        try:
            record = parse_record(await store.get(self.cfg.lease_key))
            if record is not None and record.owner_id == worker_id:
                await store.delete(self.cfg.lease_key)
                log.info("lease of closed tab cleared", worker=worker_id[-4:])
        except Exception as e:
            log.warning("could not clear lease of closed tab", error=str(e))

    # ------------------------------------------------------------------
    # Browser
    # ------------------------------------------------------------------

    async def _launch_browser(self) -> None:
        self.cfg.state_dir.mkdir(parents=True, exist_ok=True)
        self._pw = await async_playwright().start()
        self._browser = await self._pw.chromium.launch(
            headless=self.cfg.headless,
            args=["--disable-dev-shm-usage"],
        )
        ctx_kwargs: dict = {}
        if self.cfg.state_file.exists():
            ctx_kwargs["storage_state"] = str(self.cfg.state_file)
            log.info("restored browser state", path=str(self.cfg.state_file))
        self._context = await self._browser.new_context(**ctx_kwargs)

    async def _close_browser(self) -> None:
        if self._context:
            try:
                await self._context.storage_state(path=str(self.cfg.state_file))
                log.info("saved browser state", path=str(self.cfg.state_file))
            except Exception as e:
                log.warning("failed to save browser state", error=str(e))
        if self._browser:
            await self._browser.close()
        if self._pw:
            await self._pw.stop()
        self._context = None
        self._browser = None
        self._pw = None
