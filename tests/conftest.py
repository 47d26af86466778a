"""Shared test fixtures: an initialized SqliteStore and an in-memory store fake."""

from __future__ import annotations

import socket

import pytest
import pytest_asyncio

from agentplane.store.models import (
    SkillDefinition,
    ToolDefinition,
    ToolServer,
    WorkerDescriptor,
)
from agentplane.store.ports import PortAllocator
from agentplane.store.secrets import SecretBox
from agentplane.store.sqlite import SqliteStore
from agentplane.types import WorkerStatus, new_api_key


class MemoryStore:
    """Dict-backed stand-in for every store protocol. Records status changes."""

    def __init__(self) -> None:
        self.workers: dict[str, WorkerDescriptor] = {}
        self.provider_keys: dict[str, str] = {}
        self.api_keys: dict[str, str] = {}
        self.servers: dict[str, ToolServer] = {}
        self.tools: dict[tuple[str, str], ToolDefinition] = {}
        self.skills: dict[str, SkillDefinition] = {}
        self.status_log: list[tuple[str, WorkerStatus, str]] = []

    def add_worker(self, worker: WorkerDescriptor) -> WorkerDescriptor:
        self.workers[worker.id] = worker
        return worker

    def add_tool(self, tool: ToolDefinition) -> ToolDefinition:
        self.tools[(tool.server_id, tool.name)] = tool
        return tool

    async def get_worker(self, worker_id):
        return self.workers.get(worker_id)

    async def list_workers(self):
        return list(self.workers.values())

    async def find_running(self):
        return [w for w in self.workers.values() if w.status == WorkerStatus.RUNNING]

    async def set_status(self, worker_id, status, reason=""):
        self.status_log.append((worker_id, status, reason))
        worker = self.workers.get(worker_id)
        if worker:
            worker = worker.model_copy(update={"status": status, "status_reason": reason})
            self.workers[worker_id] = worker
        return worker

    async def ensure_api_key(self, worker_id):
        return self.api_keys.setdefault(worker_id, new_api_key())

    async def get_api_key(self, worker_id):
        return self.api_keys.get(worker_id)

    async def get_provider_key(self, provider):
        return self.provider_keys.get(provider)

    async def get_skill(self, skill_id):
        return self.skills.get(skill_id)

    async def get_server(self, server_id):
        return self.servers.get(server_id)

    async def list_tools(self, server_id):
        return [t for (sid, _), t in sorted(self.tools.items()) if sid == server_id]

    async def find_tool(self, server_id, name):
        return self.tools.get((server_id, name))


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    db_path = str(tmp_path / "agentplane.db")
    store = SqliteStore(db_path, SecretBox.generate(), PortAllocator(db_path))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def free_port():
    """A port nothing is listening on right now."""
    def _pick() -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]
    return _pick
