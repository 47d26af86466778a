"""SqliteStore: the bundled store backed by aiosqlite.

Implements every protocol in ``agentplane.store.base``. JSON columns are
serialized with orjson; worker API keys, provider keys and tool-server env
are sealed with a SecretBox.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite
import orjson

from agentplane.exceptions import StoreError, WorkerNotFoundError
from agentplane.migrations.runner import apply_migrations
from agentplane.store.models import (
    HttpConfig,
    SkillDefinition,
    ToolDefinition,
    ToolServer,
    WorkerDescriptor,
    WorkerFeatures,
)
from agentplane.store.ports import PortAllocator
from agentplane.store.secrets import SecretBox
from agentplane.types import (
    HandlerType,
    ResourceClass,
    WorkerStatus,
    new_api_key,
    new_id,
)

_logger = logging.getLogger(__name__)

# Server types whose tools run as a subprocess on their own port.
_SUBPROCESS_SERVER_TYPES = {"npm", "github", "custom"}

_WORKER_FIELDS = {
    "name", "model", "provider", "system_prompt", "features",
    "mcp_servers", "skills", "project_id",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode()


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        return default


class SqliteStore:
    """Worker, tool, skill and provider-key records in one SQLite file."""

    def __init__(
        self,
        db_path: str,
        secret_box: SecretBox,
        ports: PortAllocator | None = None,
    ) -> None:
        self._db_path = db_path
        self._box = secret_box
        self.ports = ports or PortAllocator(db_path)
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Apply pending migrations and open the connection."""
        await apply_migrations(self._db_path)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Store not initialized")
        return self._db

    async def _fetchone(self, sql: str, params: tuple = ()) -> aiosqlite.Row | None:
        cursor = await self.db.execute(sql, params)
        return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        cursor = await self.db.execute(sql, params)
        return list(await cursor.fetchall())

    async def _write(self, sql: str, params: tuple = ()) -> None:
        async with self._lock:
            await self.db.execute(sql, params)
            await self.db.commit()

    # ── Workers ──────────────────────────────────────────────────

    async def create_worker(
        self,
        name: str,
        model: str,
        provider: str,
        system_prompt: str = "",
        features: WorkerFeatures | None = None,
        mcp_servers: list[str] | None = None,
        skills: list[str] | None = None,
        project_id: str | None = None,
        worker_id: str | None = None,
    ) -> WorkerDescriptor:
        """Create a worker with its permanent port and a fresh API key."""
        worker_id = worker_id or new_id()
        port = await self.ports.assign(ResourceClass.AGENT, worker_id)
        features = features or WorkerFeatures()
        now = _now()
        await self._write(
            """INSERT INTO workers
               (id, name, model, provider, system_prompt, features, mcp_servers,
                skills, project_id, status, port, api_key_encrypted,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'stopped', ?, ?, ?, ?)""",
            (
                worker_id, name, model, provider, system_prompt,
                _dumps(features.model_dump(by_alias=True)),
                _dumps(mcp_servers or []),
                _dumps(skills or []),
                project_id, port,
                self._box.encrypt(new_api_key()),
                now, now,
            ),
        )
        worker = await self.get_worker(worker_id)
        assert worker is not None
        return worker

    async def get_worker(self, worker_id: str) -> WorkerDescriptor | None:
        row = await self._fetchone("SELECT * FROM workers WHERE id = ?", (worker_id,))
        return self._row_to_worker(row) if row else None

    async def list_workers(self) -> list[WorkerDescriptor]:
        rows = await self._fetchall("SELECT * FROM workers ORDER BY created_at DESC")
        return [self._row_to_worker(r) for r in rows]

    async def find_running(self) -> list[WorkerDescriptor]:
        rows = await self._fetchall(
            "SELECT * FROM workers WHERE status = ?", (WorkerStatus.RUNNING.value,),
        )
        return [self._row_to_worker(r) for r in rows]

    async def update_worker(self, worker_id: str, **updates: Any) -> WorkerDescriptor:
        """Update mutable configuration fields. Status and port are not among them."""
        unknown = set(updates) - _WORKER_FIELDS
        if unknown:
            raise StoreError(f"Cannot update worker fields: {', '.join(sorted(unknown))}")
        if await self.get_worker(worker_id) is None:
            raise WorkerNotFoundError(worker_id)

        columns: list[str] = []
        values: list[Any] = []
        for key, value in updates.items():
            if key == "features":
                if isinstance(value, WorkerFeatures):
                    value = value.model_dump(by_alias=True)
                value = _dumps(value)
            elif key in ("mcp_servers", "skills"):
                value = _dumps(value)
            columns.append(f"{key} = ?")
            values.append(value)
        columns.append("updated_at = ?")
        values.append(_now())

        await self._write(
            f"UPDATE workers SET {', '.join(columns)} WHERE id = ?",
            (*values, worker_id),
        )
        worker = await self.get_worker(worker_id)
        assert worker is not None
        return worker

    async def set_status(
        self, worker_id: str, status: WorkerStatus, reason: str = "",
    ) -> WorkerDescriptor | None:
        await self._write(
            "UPDATE workers SET status = ?, status_reason = ?, updated_at = ? WHERE id = ?",
            (status.value, reason or status.value, _now(), worker_id),
        )
        return await self.get_worker(worker_id)

    async def reset_all_status(self) -> None:
        """Mark every worker stopped (processes do not survive a restart)."""
        await self._write(
            "UPDATE workers SET status = ?, status_reason = ?, updated_at = ?",
            (WorkerStatus.STOPPED.value, "boot_reset", _now()),
        )

    async def delete_worker(self, worker_id: str) -> None:
        await self._write("DELETE FROM workers WHERE id = ?", (worker_id,))
        await self.ports.release(ResourceClass.AGENT, worker_id)

    async def get_api_key(self, worker_id: str) -> str | None:
        row = await self._fetchone(
            "SELECT api_key_encrypted FROM workers WHERE id = ?", (worker_id,),
        )
        if not row or not row["api_key_encrypted"]:
            return None
        return self._box.decrypt(row["api_key_encrypted"])

    async def ensure_api_key(self, worker_id: str) -> str:
        existing = await self.get_api_key(worker_id)
        if existing:
            return existing
        return await self.regenerate_api_key(worker_id)

    async def regenerate_api_key(self, worker_id: str) -> str:
        if await self.get_worker(worker_id) is None:
            raise WorkerNotFoundError(worker_id)
        key = new_api_key()
        await self._write(
            "UPDATE workers SET api_key_encrypted = ?, updated_at = ? WHERE id = ?",
            (self._box.encrypt(key), _now(), worker_id),
        )
        return key

    def _row_to_worker(self, row: aiosqlite.Row) -> WorkerDescriptor:
        return WorkerDescriptor(
            id=row["id"],
            name=row["name"],
            model=row["model"],
            provider=row["provider"],
            system_prompt=row["system_prompt"] or "",
            status=WorkerStatus(row["status"]),
            status_reason=row["status_reason"] or "",
            port=row["port"],
            features=WorkerFeatures.model_validate(_loads(row["features"], {})),
            mcp_servers=_loads(row["mcp_servers"], []),
            skills=_loads(row["skills"], []),
            project_id=row["project_id"],
        )

    # ── Provider keys ────────────────────────────────────────────

    async def set_provider_key(self, provider: str, key: str) -> None:
        await self._write(
            """INSERT INTO provider_keys (provider, key_encrypted, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(provider) DO UPDATE SET
                 key_encrypted = excluded.key_encrypted,
                 updated_at = excluded.updated_at""",
            (provider, self._box.encrypt(key), _now()),
        )

    async def get_provider_key(self, provider: str) -> str | None:
        row = await self._fetchone(
            "SELECT key_encrypted FROM provider_keys WHERE provider = ?", (provider,),
        )
        return self._box.decrypt(row["key_encrypted"]) if row else None

    # ── Tool servers & tools ─────────────────────────────────────

    async def create_server(
        self,
        name: str,
        type: str = "local",
        env: dict[str, str] | None = None,
        url: str | None = None,
        headers: dict[str, str] | None = None,
        server_id: str | None = None,
    ) -> ToolServer:
        server_id = server_id or new_id()
        port = None
        if type in _SUBPROCESS_SERVER_TYPES:
            port = await self.ports.assign(ResourceClass.MCP, server_id)
        await self._write(
            """INSERT INTO tool_servers
               (id, name, type, status, port, url, headers, env_encrypted, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                server_id, name, type,
                "running" if type == "local" else "stopped",
                port, url,
                _dumps(headers or {}),
                self._box.encrypt(_dumps(env or {})),
                _now(),
            ),
        )
        server = await self.get_server(server_id)
        assert server is not None
        return server

    async def get_server(self, server_id: str) -> ToolServer | None:
        row = await self._fetchone("SELECT * FROM tool_servers WHERE id = ?", (server_id,))
        if not row:
            return None
        env = {}
        if row["env_encrypted"]:
            env = _loads(self._box.decrypt(row["env_encrypted"]), {})
        return ToolServer(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            status=row["status"],
            port=row["port"],
            url=row["url"],
            headers=_loads(row["headers"], {}),
            env=env,
        )

    async def delete_server(self, server_id: str) -> None:
        await self._write("DELETE FROM tools WHERE server_id = ?", (server_id,))
        await self._write("DELETE FROM tool_servers WHERE id = ?", (server_id,))
        await self.ports.release(ResourceClass.MCP, server_id)

    async def upsert_tool(self, tool: ToolDefinition) -> ToolDefinition:
        await self._write(
            """INSERT INTO tools
               (id, server_id, name, description, input_schema, handler_type,
                mock_response, http_config, code, enabled)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(server_id, name) DO UPDATE SET
                 description = excluded.description,
                 input_schema = excluded.input_schema,
                 handler_type = excluded.handler_type,
                 mock_response = excluded.mock_response,
                 http_config = excluded.http_config,
                 code = excluded.code,
                 enabled = excluded.enabled""",
            (
                new_id(), tool.server_id, tool.name, tool.description,
                _dumps(tool.input_schema),
                tool.handler_type.value,
                _dumps(tool.mock_response) if tool.mock_response is not None else None,
                _dumps(tool.http_config.model_dump()) if tool.http_config else None,
                tool.code,
                int(tool.enabled),
            ),
        )
        return tool

    async def list_tools(self, server_id: str) -> list[ToolDefinition]:
        rows = await self._fetchall(
            "SELECT * FROM tools WHERE server_id = ? ORDER BY name", (server_id,),
        )
        return [self._row_to_tool(r) for r in rows]

    async def find_tool(self, server_id: str, name: str) -> ToolDefinition | None:
        row = await self._fetchone(
            "SELECT * FROM tools WHERE server_id = ? AND name = ?", (server_id, name),
        )
        return self._row_to_tool(row) if row else None

    @staticmethod
    def _row_to_tool(row: aiosqlite.Row) -> ToolDefinition:
        http_config = _loads(row["http_config"], None)
        return ToolDefinition(
            server_id=row["server_id"],
            name=row["name"],
            description=row["description"] or "",
            input_schema=_loads(row["input_schema"], {}),
            handler_type=HandlerType(row["handler_type"]),
            enabled=bool(row["enabled"]),
            mock_response=_loads(row["mock_response"], None),
            http_config=HttpConfig.model_validate(http_config) if http_config else None,
            code=row["code"],
        )

    # ── Skills ───────────────────────────────────────────────────

    async def upsert_skill(self, skill: SkillDefinition) -> SkillDefinition:
        await self._write(
            """INSERT INTO skills
               (id, name, description, content, allowed_tools, version, enabled)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 name = excluded.name,
                 description = excluded.description,
                 content = excluded.content,
                 allowed_tools = excluded.allowed_tools,
                 version = excluded.version,
                 enabled = excluded.enabled""",
            (
                skill.id, skill.name, skill.description, skill.content,
                _dumps(skill.allowed_tools), skill.version, int(skill.enabled),
            ),
        )
        return skill

    async def get_skill(self, skill_id: str) -> SkillDefinition | None:
        row = await self._fetchone("SELECT * FROM skills WHERE id = ?", (skill_id,))
        if not row:
            return None
        return SkillDefinition(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            content=row["content"] or "",
            allowed_tools=_loads(row["allowed_tools"], []),
            version=row["version"] or "1.0.0",
            enabled=bool(row["enabled"]),
        )

    def __repr__(self) -> str:
        return f"SqliteStore(db_path={self._db_path!r})"
