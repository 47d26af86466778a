"""Schema migrations for the agentplane database.

Each migration is a module in this package named ``m_NNN_<what>.py`` with an
``async def upgrade(db)``. Applied versions are recorded in
``schema_version``; ``apply_migrations`` runs whatever is newer, in order,
each in its own transaction.
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
import re
from pathlib import Path
from types import ModuleType

import aiosqlite

_logger = logging.getLogger(__name__)

_MIGRATION_NAME = re.compile(r"^m_(\d+)_\w+$")

_VERSION_TABLE = (
    "CREATE TABLE IF NOT EXISTS schema_version "
    "(version INTEGER PRIMARY KEY, applied_at TEXT DEFAULT CURRENT_TIMESTAMP)"
)


def discover() -> list[tuple[int, str]]:
    """(version, module name) for every migration module, oldest first."""
    found = []
    for info in pkgutil.iter_modules([str(Path(__file__).parent)]):
        m = _MIGRATION_NAME.match(info.name)
        if m:
            found.append((int(m.group(1)), info.name))
    return sorted(found)


def _load(name: str) -> ModuleType:
    return importlib.import_module(f"agentplane.migrations.{name}")


async def _current_version(db: aiosqlite.Connection) -> int:
    await db.execute(_VERSION_TABLE)
    await db.commit()
    cursor = await db.execute("SELECT MAX(version) FROM schema_version")
    row = await cursor.fetchone()
    return row[0] or 0


async def get_schema_version(db_path: str) -> int:
    async with aiosqlite.connect(db_path) as db:
        return await _current_version(db)


async def apply_migrations(db_path: str) -> list[int]:
    """Bring ``db_path`` up to date. Returns the versions applied now."""
    applied: list[int] = []
    async with aiosqlite.connect(db_path) as db:
        current = await _current_version(db)
        for version, name in discover():
            if version <= current:
                continue
            try:
                await _load(name).upgrade(db)
                await db.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
                await db.commit()
            except Exception:
                await db.rollback()
                _logger.error("Migration %s failed; schema left at version %d", name, current)
                raise
            _logger.info("Applied migration %s", name)
            current = version
            applied.append(version)
    return applied
