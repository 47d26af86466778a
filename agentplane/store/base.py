"""Store protocols: what the supervisor and gateway need from persistence."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from agentplane.store.models import (
    SkillDefinition,
    ToolDefinition,
    ToolServer,
    WorkerDescriptor,
)
from agentplane.types import WorkerStatus


class WorkerStore(Protocol):
    async def get_worker(self, worker_id: str) -> WorkerDescriptor | None: ...

    async def list_workers(self) -> list[WorkerDescriptor]: ...

    async def find_running(self) -> list[WorkerDescriptor]: ...

    async def set_status(
        self, worker_id: str, status: WorkerStatus, reason: str = "",
    ) -> WorkerDescriptor | None: ...

    async def ensure_api_key(self, worker_id: str) -> str:
        """Return the worker's credential, creating one if it has none."""
        ...

    async def get_api_key(self, worker_id: str) -> str | None: ...


class ProviderKeyStore(Protocol):
    async def get_provider_key(self, provider: str) -> str | None:
        """Decrypted upstream key for a provider, or None."""
        ...


class SkillStore(Protocol):
    async def get_skill(self, skill_id: str) -> SkillDefinition | None: ...


@runtime_checkable
class ToolStore(Protocol):
    async def get_server(self, server_id: str) -> ToolServer | None: ...

    async def list_tools(self, server_id: str) -> list[ToolDefinition]: ...

    async def find_tool(self, server_id: str, name: str) -> ToolDefinition | None: ...


class ConfigSourceStore(WorkerStore, ToolStore, SkillStore, Protocol):
    """What configuration building reads: credentials, bound servers and skills."""


@runtime_checkable
class SupervisorStore(ConfigSourceStore, ProviderKeyStore, Protocol):
    pass
