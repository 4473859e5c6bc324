"""Leader election between browser tabs over a shared lease store.

Every worker ticks on a fixed interval:

    record absent, unparseable or stale  -> write (self, now), become LEADER
    record owned by self                 -> refresh timestamp, stay LEADER
    record owned by someone else         -> become FOLLOWER

The store has no compare-and-swap, so two workers can both see a stale
record and both write it. Whoever's write landed last is the stored owner;
on the next tick the other one reads a foreign id and steps down. Duplicate
leadership therefore lasts at most one extra interval, and the work it
drives (task server jobs) is idempotent per task id.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Awaitable, Callable

from automator.lease import LeaseRecord, LeaseStore, now_ms, parse_record
from automator.readiness import AlwaysReady, ReadinessSignal, poll_until

log = logging.getLogger(__name__)


class Role(Enum):
    UNKNOWN = "unknown"
    LEADER = "leader"
    FOLLOWER = "follower"


def new_worker_id() -> str:
    return f"{now_ms()}-{uuid.uuid4().hex[:12]}"


class LeaderElector:
    """Claim, renew or yield the lease; run ``work`` only while LEADER.

    ``work`` is a coroutine factory started after the readiness signal has
    been consumed; it is cancelled as soon as this worker loses the lease.
    """

    def __init__(
        self,
        store: LeaseStore,
        key: str,
        work: Callable[[], Awaitable[None]],
        interval: float = 5.0,
        stale_factor: float = 2.5,
        readiness: ReadinessSignal | None = None,
        ready_poll: float = 1.0,
        startup_delay: float = 0.0,
        worker_id: str | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.key = key
        self.work = work
        self.interval = interval
        self.ttl_ms = interval * stale_factor * 1000
        self.readiness = readiness or AlwaysReady()
        self.ready_poll = ready_poll
        self.startup_delay = startup_delay
        self.worker_id = worker_id or new_worker_id()
        self._clock = clock
        self._role = Role.UNKNOWN
        self._ready = False
        self._leader_task: asyncio.Task | None = None
        self._loop_task: asyncio.Task | None = None

    @property
    def role(self) -> Role:
        return self._role

    @property
    def is_leader(self) -> bool:
        return self._role is Role.LEADER

    @property
    def short_id(self) -> str:
        return self.worker_id[-4:]

    # -- Election ------------------------------------------------------------

    async def tick(self) -> Role:
        """Run one read-check-write round and return the resulting role."""
        try:
            record = parse_record(await self.store.get(self.key))
        except Exception as e:
            log.warning("lease read failed", extra={"error": str(e)})
            record = None

        now = self._clock()
        claimable = record is None or record.is_stale(now, self.ttl_ms)
        if claimable or record.owner_id == self.worker_id:
            await self._write_lease(now)
            self._become_leader()
        else:
            self._become_follower()
        return self._role

    async def _write_lease(self, now: int) -> None:
        record = LeaseRecord(owner_id=self.worker_id, renewed_at=now)
        await self.store.set(self.key, record.to_json())

    def _become_leader(self) -> None:
        if self._role is Role.LEADER:
            return
        log.info("became leader", extra={"worker": self.short_id})
        self._role = Role.LEADER
        self._leader_task = asyncio.get_event_loop().create_task(self._lead())

    def _become_follower(self) -> None:
        if self._role is Role.LEADER:
            log.info("became follower, stopping work", extra={"worker": self.short_id})
            self._stop_work()
        self._role = Role.FOLLOWER

    def _stop_work(self) -> None:
        if self._leader_task:
            self._leader_task.cancel()
            self._leader_task = None

    async def _lead(self) -> None:
        try:
            # The flag is consumed once per worker; a re-elected worker
            # resumes work without waiting for a second signal.
            if not self._ready:
                log.info("waiting for readiness signal", extra={"worker": self.short_id})
                await poll_until(self.readiness.consume, self.ready_poll, None)
                self._ready = True
                log.info("readiness signal consumed", extra={"worker": self.short_id})
            await self.work()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("leader work crashed", extra={"worker": self.short_id, "error": str(e)})
            # Work is restarted by the next tick that renews the lease.
            self._role = Role.UNKNOWN
            self._leader_task = None

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        self._loop_task = asyncio.get_event_loop().create_task(self.run())

    async def run(self) -> None:
        await asyncio.sleep(self.startup_delay)
        while True:
            try:
                await self.tick()
            except Exception as e:
                log.error("election tick failed", extra={"worker": self.short_id, "error": str(e)})
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        if self._loop_task:
            self._loop_task.cancel()
            self._loop_task = None
        self._stop_work()

    async def release(self) -> None:
        """Stop ticking and hand the lease back if this worker still holds it."""
        was_leader = self.is_leader
        self.stop()
        self._role = Role.UNKNOWN
        if not was_leader:
            return
        try:
            record = parse_record(await self.store.get(self.key))
            if record is not None and record.owner_id == self.worker_id:
                await self.store.delete(self.key)
                log.info("lease released", extra={"worker": self.short_id})
        except Exception as e:
            log.warning("lease release failed", extra={"worker": self.short_id, "error": str(e)})
