"""WorkerClient: the supervisor's side of a worker's HTTP surface.

``/health`` and ``/shutdown`` are unauthenticated; every other call carries
the worker's credential as ``X-API-Key``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

_logger = logging.getLogger(__name__)


class WorkerCallError(Exception):
    """A configuration call into a worker did not succeed."""


class WorkerClient:
    def __init__(self, host: str = "127.0.0.1", timeout: float = 5.0) -> None:
        self._host = host
        self._timeout = timeout

    def url(self, port: int, path: str) -> str:
        return f"http://{self._host}:{port}{path}"

    async def health(self, port: int, timeout: float = 1.0) -> bool:
        """True when ``GET /health`` answers with a 2xx."""
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.get(self.url(port, "/health"))
                return resp.is_success
        except httpx.HTTPError:
            return False

    async def request_shutdown(self, port: int, timeout: float = 2.0) -> bool:
        """Ask the worker to exit. Best effort: errors mean "no answer"."""
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(self.url(port, "/shutdown"))
                return resp.is_success
        except httpx.HTTPError:
            return False

    async def post_config(self, port: int, api_key: str, document: dict[str, Any]) -> None:
        """Send the full configuration document (flat, not wrapped)."""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                self.url(port, "/config"),
                json=document,
                headers={"X-API-Key": api_key},
            )
        if not resp.is_success:
            raise WorkerCallError(_error_detail(resp))

    async def push_skill(self, port: int, api_key: str, skill: dict[str, Any]) -> None:
        """Update a skill on the worker, creating it when the worker does not know it."""
        headers = {"X-API-Key": api_key}
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.put(self.url(port, "/skills"), json=skill, headers=headers)
            if resp.status_code == 404:
                resp = await client.post(self.url(port, "/skills"), json=skill, headers=headers)
        if not resp.is_success:
            raise WorkerCallError(_error_detail(resp))

    async def set_skills_status(self, port: int, api_key: str, enabled: bool) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                self.url(port, "/skills/status"),
                json={"enabled": enabled},
                headers={"X-API-Key": api_key},
            )
        if not resp.is_success:
            raise WorkerCallError(_error_detail(resp))


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return f"HTTP {resp.status_code}"
