"""ProcessTable: live worker handles and the set of workers mid-startup.

Both collections sit behind one lock. Membership in the starting set is the
mutual-exclusion token for start: ``try_begin_start`` checks both
collections and inserts in a single locked step.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from agentplane.exceptions import SupervisorErrorCode


@dataclass(eq=False)
class RunningProcessHandle:
    """One spawned worker process. Compared by identity."""

    worker_id: str
    process: asyncio.subprocess.Process
    port: int
    started_at: float = field(default_factory=time.time)
    stdout_lines: list[str] = field(default_factory=list)
    stderr_lines: list[str] = field(default_factory=list)
    observer: asyncio.Task | None = None
    reader: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    def stderr_tail(self, lines: int = 10) -> str:
        return "\n".join(self.stderr_lines[-lines:])


class ProcessTable:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._handles: dict[str, RunningProcessHandle] = {}
        self._starting: set[str] = set()

    async def try_begin_start(self, worker_id: str) -> SupervisorErrorCode | None:
        """Claim the start token for ``worker_id``. Returns the reason on refusal."""
        async with self._lock:
            if worker_id in self._handles:
                return SupervisorErrorCode.ALREADY_RUNNING
            if worker_id in self._starting:
                return SupervisorErrorCode.ALREADY_STARTING
            self._starting.add(worker_id)
            return None

    async def end_start(self, worker_id: str) -> None:
        async with self._lock:
            self._starting.discard(worker_id)

    async def register(self, handle: RunningProcessHandle) -> None:
        async with self._lock:
            self._handles[handle.worker_id] = handle

    async def get(self, worker_id: str) -> RunningProcessHandle | None:
        async with self._lock:
            return self._handles.get(worker_id)

    async def remove(
        self, worker_id: str, handle: RunningProcessHandle | None = None,
    ) -> RunningProcessHandle | None:
        """Drop the worker's handle and return it.

        With ``handle`` given, only that exact handle is removed; a newer one
        registered for the same worker is left alone.
        """
        async with self._lock:
            current = self._handles.get(worker_id)
            if current is None or (handle is not None and current is not handle):
                return None
            del self._handles[worker_id]
            return current

    async def drain(self) -> list[RunningProcessHandle]:
        async with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
            return handles

    def is_starting(self, worker_id: str) -> bool:
        return worker_id in self._starting

    def snapshot(self) -> dict[str, RunningProcessHandle]:
        return dict(self._handles)

    def __len__(self) -> int:
        return len(self._handles)
