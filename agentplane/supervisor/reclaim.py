"""Port reclaimers: force-kill whatever process owns a TCP port.

Pluggable so the supervisor core never shells out directly. The default
implementation uses ``lsof`` and is a no-op where that is unavailable.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Protocol

_logger = logging.getLogger(__name__)


class PortReclaimer(Protocol):
    async def reclaim(self, port: int) -> None:
        """Best effort. Must not raise."""
        ...


class NullPortReclaimer:
    async def reclaim(self, port: int) -> None:
        _logger.debug("No port reclaimer configured; leaving port %d alone", port)


class LsofPortReclaimer:
    """Finds listeners with ``lsof -ti:<port>`` and SIGKILLs them."""

    def __init__(self, lsof: str = "lsof", timeout: float = 5.0) -> None:
        self._lsof = lsof
        self._timeout = timeout

    async def owners(self, port: int) -> list[int]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._lsof, f"-ti:{port}",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except FileNotFoundError:
            _logger.warning("lsof not found; cannot reclaim port %d", port)
            return []
        except asyncio.TimeoutError:
            _logger.warning("lsof timed out looking up port %d", port)
            return []

        pids = []
        for line in stdout.decode(errors="replace").split():
            if line.isdigit():
                pids.append(int(line))
        return pids

    async def reclaim(self, port: int) -> None:
        own = os.getpid()
        for pid in await self.owners(port):
            if pid == own:
                continue
            try:
                os.kill(pid, signal.SIGKILL)
                _logger.info("Killed pid %d holding port %d", pid, port)
            except ProcessLookupError:
                pass
            except PermissionError:
                _logger.warning("Not permitted to kill pid %d holding port %d", pid, port)
