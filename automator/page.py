"""Playwright adapters: lease store, readiness flag and DOM access for a tab.

Tabs opened in the same browser context share ``localStorage`` for the app
origin, which makes it the lease medium between them. ``sessionStorage``
is per tab, which is where the injector leaves the readiness flag.
"""
from __future__ import annotations

import logging

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Page

from automator.readiness import poll_until

log = logging.getLogger(__name__)


class PageLeaseStore:
    """LeaseStore over the page's ``window.localStorage``."""

    def __init__(self, page: Page) -> None:
        self.page = page

    async def get(self, key: str) -> str | None:
        return await self.page.evaluate("k => window.localStorage.getItem(k)", key)

    async def set(self, key: str, value: str) -> None:
        await self.page.evaluate(
            "([k, v]) => window.localStorage.setItem(k, v)", [key, value]
        )

    async def delete(self, key: str) -> None:
        await self.page.evaluate("k => window.localStorage.removeItem(k)", key)


class PageReadiness:
    """Readiness flag in the tab's ``sessionStorage`` (value ``"true"``)."""

    def __init__(self, page: Page, key: str = "AUTOMATION_READY") -> None:
        self.page = page
        self.key = key

    async def consume(self) -> bool:
        try:
            return bool(
                await self.page.evaluate(
                    """k => {
                        if (window.sessionStorage.getItem(k) !== 'true') return false;
                        window.sessionStorage.removeItem(k);
                        return true;
                    }""",
                    self.key,
                )
            )
        except PlaywrightError as e:
            log.warning("readiness check failed", extra={"error": str(e)})
            return False


class PageDom:
    """Prompt input and submit control of the app page."""

    def __init__(
        self,
        page: Page,
        input_selectors: list[str],
        submit_selector: str,
        timeout: float = 10.0,
        poll_interval: float = 0.2,
    ) -> None:
        self.page = page
        self.input_selectors = list(input_selectors)
        self.submit_selector = submit_selector
        self.timeout = timeout
        self.poll_interval = poll_interval

    async def find_input(self) -> Locator | None:
        """Return the first visible prompt input, or None after the timeout."""
        found = await poll_until(self._visible_input, self.poll_interval, self.timeout)
        if found is None:
            log.error(
                "no prompt input found",
                extra={"selectors": self.input_selectors, "timeout": self.timeout},
            )
        return found

    async def _visible_input(self) -> Locator | None:
        for selector in self.input_selectors:
            loc = self.page.locator(selector).first
            try:
                if await loc.is_visible():
                    return loc
            except PlaywrightError:
                continue
        return None

    async def fill(self, element: Locator, text: str) -> None:
        await element.fill(text)
        await element.dispatch_event("input", {"bubbles": True, "composed": True})

    async def submit(self) -> bool:
        """Click the submit control. False if it is missing or disabled."""
        button = self.page.locator(self.submit_selector).first
        try:
            if await button.count() == 0 or await button.is_disabled():
                return False
            await button.click()
        except PlaywrightError as e:
            log.error("submit click failed", extra={"error": str(e)})
            return False
        return True
