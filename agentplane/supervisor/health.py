"""HealthProber: readiness polling and the raw port-free probe."""

from __future__ import annotations

import asyncio
import logging
import socket

from agentplane.supervisor.client import WorkerClient

_logger = logging.getLogger(__name__)


class HealthProber:
    """Polls ``/health`` on a fixed budget.

    The default budget (30 attempts, 200 ms apart, 1 s per request) puts the
    ceiling at roughly six seconds when the worker refuses connections.
    """

    def __init__(
        self,
        client: WorkerClient,
        max_attempts: int = 30,
        delay: float = 0.2,
        request_timeout: float = 1.0,
    ) -> None:
        self._client = client
        self.max_attempts = max_attempts
        self.delay = delay
        self.request_timeout = request_timeout

    async def wait_for_health(
        self,
        port: int,
        max_attempts: int | None = None,
        delay: float | None = None,
    ) -> bool:
        attempts = self.max_attempts if max_attempts is None else max_attempts
        pause = self.delay if delay is None else delay
        for attempt in range(attempts):
            if await self._client.health(port, timeout=self.request_timeout):
                _logger.debug("Port %d healthy after %d attempt(s)", port, attempt + 1)
                return True
            await asyncio.sleep(pause)
        return False

    async def answers(self, port: int, timeout: float = 0.5) -> bool:
        """Single quick check: is something speaking HTTP health on this port?"""
        return await self._client.health(port, timeout=timeout)


def port_is_free(port: int, host: str = "127.0.0.1") -> bool:
    """True when a listening socket can be bound to ``host:port`` right now."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(1)
    except OSError:
        return False
    finally:
        sock.close()
    return True
