"""Capture of one streamed GenerateContent response.

The upstream stream has no terminator an observer can rely on, so the end
is inferred:

- Primary: the newly arrived suffix contains the final block signature
  ``[null,null,null,["`` (the block carrying the conversation id). Earlier
  metadata blocks look similar but never have three leading nulls followed
  by a string array, so they cannot end the stream early.
- Fallback: the transport's load event arms a grace timer; when it fires
  the stream is finalized with whatever has arrived.

A missed signature only costs the grace period. A false match would
truncate the response, so the signature must stay narrow.

Chunks reach the consumer in offset order with no gaps or overlaps,
followed by exactly one ``END_OF_STREAM`` sentinel.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable

from automator.observer import NetworkObserver

log = logging.getLogger(__name__)

END_OF_STREAM = "__END_OF_STREAM__"

FINAL_BLOCK_SIGNATURE = re.compile(r'\[\s*null\s*,\s*null\s*,\s*null\s*,\s*\[\s*"')

ARM_TIMEOUT = 60.0
GRACE_PERIOD = 1.5


class CaptureError(Exception):
    """The capture ended without a complete response.

    ``partial`` holds the text received before the failure, so callers can
    still report it.
    """

    def __init__(self, message: str, partial: str = "") -> None:
        super().__init__(message)
        self.partial = partial


class CaptureBusy(CaptureError):
    """Another capture is still active on this observer."""


class CaptureTimeout(CaptureError):
    """No matching request was observed within the arm timeout."""


@dataclass
class StreamSession:
    delivered_length: int = 0
    text: str = ""
    terminated: bool = False
    grace_timer: asyncio.TimerHandle | None = None


class _SessionListener:
    """Routes observer events for one capture to its StreamCapture."""

    def __init__(self, capture: StreamCapture) -> None:
        self._capture = capture

    def on_request(self) -> None:
        self._capture._on_request()

    def on_progress(self, text: str) -> None:
        self._capture._on_progress(text)

    def on_load(self) -> None:
        self._capture._on_load()

    def on_error(self, cause: str) -> None:
        self._capture._on_failure(cause)

    def on_abort(self) -> None:
        self._capture._on_failure("XHR request aborted")


class StreamCapture:
    """Single-flight capture of matching requests seen by ``observer``.

    ``on_chunk`` receives every new suffix and finally ``END_OF_STREAM``.
    """

    def __init__(
        self,
        observer: NetworkObserver,
        on_chunk: Callable[[str], None],
        arm_timeout: float = ARM_TIMEOUT,
        grace_period: float = GRACE_PERIOD,
        signature: re.Pattern[str] = FINAL_BLOCK_SIGNATURE,
    ) -> None:
        self.observer = observer
        self.on_chunk = on_chunk
        self.arm_timeout = arm_timeout
        self.grace_period = grace_period
        self.signature = signature
        self._active = False
        self._session: StreamSession | None = None
        self._future: asyncio.Future[str] | None = None
        self._arm_timer: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def session(self) -> StreamSession | None:
        return self._session

    async def capture(self, target: str) -> asyncio.Future[str]:
        """Arm the observer for ``target`` and return the completion future.

        The future resolves with the full response text, or fails with
        CaptureError on error, abort or arm timeout. A call made while a
        capture is active gets an already failed future (CaptureBusy).
        """
        loop = asyncio.get_event_loop()
        future: asyncio.Future[str] = loop.create_future()
        if self._active:
            log.warning("capture already active, refusing to re-arm")
            future.set_exception(CaptureBusy("a capture is already in progress"))
            return future

        self._active = True
        self._session = None
        self._future = future
        self._arm_timer = loop.call_later(self.arm_timeout, self._on_arm_timeout)
        try:
            await self.observer.install(target, _SessionListener(self))
        except Exception as e:
            self._reset()
            future.set_exception(CaptureError(f"failed to install network hook: {e}"))
        return future

    def cancel(self) -> None:
        """Disarm without a result (e.g. the prompt could not be submitted).

        A stream already under way is closed with ``END_OF_STREAM``.
        """
        if not self._active:
            return
        session = self._session
        if session is not None and not session.terminated:
            session.terminated = True
            if session.grace_timer is not None:
                session.grace_timer.cancel()
                session.grace_timer = None
            self._emit(END_OF_STREAM)
        future = self._future
        self._reset()
        if future is not None and not future.done():
            future.cancel()

    # -- Observer events -----------------------------------------------------

    def _on_request(self) -> None:
        if not self._active or self._session is not None:
            return
        if self._arm_timer:
            self._arm_timer.cancel()
            self._arm_timer = None
        self._session = StreamSession()
        log.info("target request intercepted, receiving stream")

    def _on_progress(self, text: str) -> None:
        session = self._session
        if session is None or session.terminated:
            return
        session.text = text
        suffix = text[session.delivered_length:]
        if not suffix:
            return
        self._emit(suffix)
        session.delivered_length = len(text)
        if self.signature.search(suffix):
            log.info("final block signature detected, stream complete")
            self.finalize()

    def _on_load(self) -> None:
        session = self._session
        if session is None or session.terminated or session.grace_timer is not None:
            return
        log.info(
            "load event fired, finalizing after grace period",
            extra={"grace_seconds": self.grace_period},
        )
        session.grace_timer = asyncio.get_event_loop().call_later(
            self.grace_period, self.finalize
        )

    def _on_failure(self, cause: str) -> None:
        session = self._session
        if session is None or session.terminated:
            return
        log.error("stream failed", extra={"cause": cause, "received": len(session.text)})
        future = self._future
        self.finalize(error=cause)
        if future is not None and not future.done():
            future.set_exception(CaptureError(cause, partial=session.text))

    def _on_arm_timeout(self) -> None:
        self._arm_timer = None
        if not self._active or self._session is not None:
            return
        future = self._future
        self._reset()
        message = f"no target request observed within {self.arm_timeout:g}s"
        log.error("capture timed out", extra={"arm_timeout": self.arm_timeout})
        if future is not None and not future.done():
            future.set_exception(CaptureTimeout(message))

    # -- Completion ----------------------------------------------------------

    def finalize(self, error: str | None = None) -> None:
        """Flush, emit the sentinel, settle the future and restore the hook.

        Safe to call more than once; only the first call has any effect.
        With ``error`` set the future is left for the caller to fail.
        """
        session = self._session
        if session is None or session.terminated:
            return
        session.terminated = True
        if session.grace_timer is not None:
            session.grace_timer.cancel()
            session.grace_timer = None

        remainder = session.text[session.delivered_length:]
        if remainder:
            self._emit(remainder)
            session.delivered_length = len(session.text)
        self._emit(END_OF_STREAM)

        future = self._future
        self._reset()
        if error is None and future is not None and not future.done():
            future.set_result(session.text)
        log.info("stream finalized", extra={"length": len(session.text)})

    def _emit(self, chunk: str) -> None:
        try:
            self.on_chunk(chunk)
        except Exception as e:
            log.error("chunk consumer failed", extra={"error": str(e)})

    def _reset(self) -> None:
        if self._arm_timer:
            self._arm_timer.cancel()
            self._arm_timer = None
        self._future = None
        self._active = False
        self.observer.restore()
