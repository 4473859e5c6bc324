"""Network observation of the page's streaming requests.

A ``NetworkObserver`` reports the lifecycle of the first outgoing request
whose URL contains a signature substring, between ``install()`` and
``restore()``. All other requests pass through unobserved.

``PageXhrObserver`` does this for a Playwright page: an init script wraps
``XMLHttpRequest.prototype.open/send`` once per document and forwards
events for matching requests through an exposed binding. Installing only
arms the wrapper with a target; restoring disarms it.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

log = logging.getLogger(__name__)


class StreamListener(Protocol):
    def on_request(self) -> None: ...

    def on_progress(self, text: str) -> None: ...

    def on_load(self) -> None: ...

    def on_error(self, cause: str) -> None: ...

    def on_abort(self) -> None: ...


class NetworkObserver(Protocol):
    async def install(self, signature: str, listener: StreamListener) -> None: ...

    def restore(self) -> None: ...


_BINDING = "__automatorEmit"

_HOOK_SCRIPT = """
(() => {
  if (window.__automatorHooked) return;
  window.__automatorHooked = true;
  window.__automatorTarget = null;
  let seq = 0;
  const origOpen = XMLHttpRequest.prototype.open;
  const origSend = XMLHttpRequest.prototype.send;
  XMLHttpRequest.prototype.open = function (method, url, ...rest) {
    this.__automatorUrl = String(url);
    return origOpen.apply(this, [method, url, ...rest]);
  };
  XMLHttpRequest.prototype.send = function (...args) {
    const target = window.__automatorTarget;
    if (target && this.__automatorUrl && this.__automatorUrl.includes(target)) {
      const id = ++seq;
      const emit = (type, text) => {
        try { window.%(binding)s({ id, type, text }); } catch (e) {}
      };
      emit('request', null);
      this.addEventListener('progress', () => emit('progress', this.responseText));
      this.addEventListener('load', () => emit('load', this.responseText));
      this.addEventListener('error', () => emit('error', null));
      this.addEventListener('abort', () => emit('abort', null));
    }
    return origSend.apply(this, args);
  };
})();
""" % {"binding": _BINDING}


class PageXhrObserver:
    """NetworkObserver backed by an XMLHttpRequest wrapper inside ``page``.

    Events are bound to the first matching request seen after ``install()``;
    later matches (retries, a second submit) are ignored until the next
    install.
    """

    def __init__(self, page: Page) -> None:
        self.page = page
        self._listener: StreamListener | None = None
        self._request_id: int | None = None
        self._attached = False

    async def attach(self) -> None:
        """Register the binding and init script; call before navigating."""
        if self._attached:
            return
        await self.page.expose_function(_BINDING, self._dispatch)
        await self.page.add_init_script(_HOOK_SCRIPT)
        self._attached = True

    async def install(self, signature: str, listener: StreamListener) -> None:
        self._listener = listener
        self._request_id = None
        await self.page.evaluate("t => { window.__automatorTarget = t; }", signature)
        log.debug("network hook armed", extra={"signature": signature})

    def restore(self) -> None:
        if self._listener is None:
            return
        self._listener = None
        self._request_id = None
        asyncio.get_event_loop().create_task(self._disarm())

    async def _disarm(self) -> None:
        try:
            await self.page.evaluate("() => { window.__automatorTarget = null; }")
        except PlaywrightError as e:
            log.warning("network hook disarm failed", extra={"error": str(e)})
        else:
            log.debug("network hook restored")

    def _dispatch(self, event: dict) -> None:
        listener = self._listener
        if listener is None:
            return
        req_id = event.get("id")
        kind = event.get("type")
        if self._request_id is None:
            if kind != "request":
                return
            self._request_id = req_id
        elif req_id != self._request_id:
            return

        text = event.get("text")
        if kind == "request":
            listener.on_request()
        elif kind == "progress":
            listener.on_progress(text or "")
        elif kind == "load":
            if text:
                listener.on_progress(text)
            listener.on_load()
        elif kind == "error":
            listener.on_error("XHR request failed")
        elif kind == "abort":
            listener.on_abort()
