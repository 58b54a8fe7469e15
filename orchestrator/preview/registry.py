from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from orchestrator.shared import LIVE_STATES, PreviewStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PreviewRecord:
    site_id: str
    port: int
    workspace_path: Path
    status: PreviewStatus = "starting"
    process: asyncio.subprocess.Process | None = None
    requested_at: datetime = field(default_factory=utc_now)
    last_activity: datetime = field(default_factory=utc_now)
    exit_code: int | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATES

    def touch(self) -> None:
        self.last_activity = utc_now()

    def mark_running(self) -> None:
        self.status = "running"

    def mark_stopped(self, exit_code: int | None = None) -> None:
        self.status = "stopped"
        self.process = None
        self.exit_code = exit_code


class PreviewRegistry:
    """In-memory source of truth for previews.

    Owns the ``site_id -> PreviewRecord`` map, the monotonic port counter and
    one ``asyncio.Lock`` per site. Everything is mutated from the event loop
    thread only, so plain dict/int operations need no further locking; the
    per-site locks serialize multi-step workspace operations.
    """

    def __init__(self, base_port: int = 3100) -> None:
        self._records: dict[str, PreviewRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._next_port = base_port

    def allocate_port(self) -> int:
        # Ports are never recycled so a lingering socket of an old process
        # can not collide with a new one.
        port = self._next_port
        self._next_port += 1
        return port

    def get(self, site_id: str) -> PreviewRecord | None:
        return self._records.get(site_id)

    def put(self, record: PreviewRecord) -> PreviewRecord:
        self._records[record.site_id] = record
        return record

    def touch(self, site_id: str) -> PreviewRecord | None:
        record = self._records.get(site_id)
        if record is not None:
            record.touch()
        return record

    def lock(self, site_id: str) -> asyncio.Lock:
        lock = self._locks.get(site_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[site_id] = lock
        return lock

    def active_count(self) -> int:
        return sum(1 for record in self._records.values() if record.is_live)

    def values(self) -> list[PreviewRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[PreviewRecord]:
        return iter(self.values())

    def __contains__(self, site_id: object) -> bool:
        return site_id in self._records
