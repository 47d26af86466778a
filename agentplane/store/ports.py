"""PortAllocator: permanent, monotonically increasing ports per resource class.

A resource gets its port once, when it is created, and keeps it until the
resource is deleted. New ports are always above every port currently assigned
in the same class.
"""

from __future__ import annotations

import asyncio
import logging

import aiosqlite

from agentplane.types import ResourceClass

_logger = logging.getLogger(__name__)

DEFAULT_BASE_PORTS: dict[ResourceClass, int] = {
    ResourceClass.AGENT: 4100,
    ResourceClass.MCP: 4200,
}


class PortAllocator:
    """Assigns ports from the ``port_assignments`` table."""

    def __init__(
        self,
        db_path: str,
        base_ports: dict[ResourceClass, int] | None = None,
    ) -> None:
        self._db_path = db_path
        self._base_ports = {**DEFAULT_BASE_PORTS, **(base_ports or {})}
        self._lock = asyncio.Lock()

    async def assign(self, resource_class: ResourceClass, resource_id: str) -> int:
        """Return the resource's port, assigning the next free one if it has none."""
        async with self._lock:
            async with aiosqlite.connect(self._db_path) as db:
                existing = await self._lookup(db, resource_class, resource_id)
                if existing is not None:
                    return existing

                cursor = await db.execute(
                    "SELECT MAX(port) FROM port_assignments WHERE resource_class = ?",
                    (resource_class.value,),
                )
                row = await cursor.fetchone()
                base = self._base_ports[resource_class]
                port = base if row[0] is None else max(row[0] + 1, base)

                # Ranges of different classes can run into each other.
                cursor = await db.execute("SELECT port FROM port_assignments")
                taken = {r[0] for r in await cursor.fetchall()}
                while port in taken:
                    port += 1

                await db.execute(
                    "INSERT INTO port_assignments (resource_class, resource_id, port) "
                    "VALUES (?, ?, ?)",
                    (resource_class.value, resource_id, port),
                )
                await db.commit()

        _logger.info("Assigned port %d to %s %s", port, resource_class.value, resource_id)
        return port

    async def lookup(self, resource_class: ResourceClass, resource_id: str) -> int | None:
        async with aiosqlite.connect(self._db_path) as db:
            return await self._lookup(db, resource_class, resource_id)

    async def release(self, resource_class: ResourceClass, resource_id: str) -> None:
        """Drop the assignment. Only called when the owning resource is deleted."""
        async with self._lock:
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute(
                    "DELETE FROM port_assignments WHERE resource_class = ? AND resource_id = ?",
                    (resource_class.value, resource_id),
                )
                await db.commit()

    @staticmethod
    async def _lookup(
        db: aiosqlite.Connection, resource_class: ResourceClass, resource_id: str,
    ) -> int | None:
        cursor = await db.execute(
            "SELECT port FROM port_assignments WHERE resource_class = ? AND resource_id = ?",
            (resource_class.value, resource_id),
        )
        row = await cursor.fetchone()
        return row[0] if row else None
