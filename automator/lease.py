"""Lease records and the key/value stores they live in.

A lease is a single JSON value ``{"id": <owner>, "timestamp": <epoch ms>}``
under one well-known key. Stores offer plain get/set/delete with no
compare-and-swap; the elector tolerates the resulting race.

Backends:
    MemoryLeaseStore  in-process dict (tests, several workers in one process)
    FileLeaseStore    JSON file (separate processes on one machine)
    PageLeaseStore    browser localStorage (see automator.page)
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

log = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class LeaseRecord:
    owner_id: str
    renewed_at: int  # epoch milliseconds

    def is_stale(self, now: int, ttl_ms: float) -> bool:
        return now - self.renewed_at > ttl_ms

    def to_json(self) -> str:
        return json.dumps({"id": self.owner_id, "timestamp": self.renewed_at})


def parse_record(raw: str | None) -> LeaseRecord | None:
    """Decode a stored lease; anything unusable reads as no lease at all."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
        owner = data.get("id")
        ts = data.get("timestamp")
    except (json.JSONDecodeError, AttributeError):
        log.warning("unparseable lease record", extra={"raw": raw[:80]})
        return None
    if not owner or not isinstance(ts, (int, float)) or isinstance(ts, bool):
        return None
    return LeaseRecord(owner_id=str(owner), renewed_at=int(ts))


class LeaseStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryLeaseStore:
    """Dict-backed store shared by every worker holding a reference to it."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileLeaseStore:
    """JSON-object file holding one entry per key (full rewrite on change)."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)

    async def get(self, key: str) -> str | None:
        return self._load().get(key)

    async def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    async def delete(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, str]) -> None:
        # Readers see either the old file or the new one.
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data))
        tmp.replace(self._path)
