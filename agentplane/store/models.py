"""Records owned by the store and read by the supervisor and gateway."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from agentplane.types import HandlerType, WorkerStatus


class MultiAgentConfig(BaseModel):
    enabled: bool = False
    mode: str = "worker"
    group: str | None = None


class BuiltinTools(BaseModel):
    web_search: bool = Field(default=False, alias="webSearch")
    web_fetch: bool = Field(default=False, alias="webFetch")

    model_config = {"populate_by_name": True}


class WorkerFeatures(BaseModel):
    """Feature flags a worker is configured with."""

    memory: bool = True
    tasks: bool = False
    vision: bool = True
    operator: bool = False
    mcp: bool = False
    realtime: bool = False
    files: bool = False
    agents: bool | MultiAgentConfig = False
    builtin_tools: BuiltinTools = Field(default_factory=BuiltinTools, alias="builtinTools")

    model_config = {"populate_by_name": True}

    def multi_agent(self, project_id: str | None = None) -> MultiAgentConfig:
        """Normalize the ``agents`` flag; the group falls back to the project."""
        if isinstance(self.agents, bool):
            return MultiAgentConfig(enabled=self.agents, mode="worker", group=project_id)
        return MultiAgentConfig(
            enabled=self.agents.enabled,
            mode=self.agents.mode or "worker",
            group=self.agents.group or project_id,
        )


class WorkerDescriptor(BaseModel):
    """One configured agent worker."""

    id: str
    name: str
    model: str
    provider: str
    system_prompt: str = ""
    status: WorkerStatus = WorkerStatus.STOPPED
    status_reason: str = ""
    port: int | None = None
    features: WorkerFeatures = Field(default_factory=WorkerFeatures)
    mcp_servers: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    project_id: str | None = None


class HttpConfig(BaseModel):
    method: str = "GET"
    url: str = ""
    headers: dict[str, Any] = Field(default_factory=dict)
    body: Any = None


class ToolDefinition(BaseModel):
    """A tool served by the gateway. ``handler_type`` picks the payload used."""

    server_id: str
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    handler_type: HandlerType = HandlerType.MOCK
    enabled: bool = True
    mock_response: Any = None
    http_config: HttpConfig | None = None
    code: str | None = None

    def listing(self) -> dict[str, Any]:
        """The tools/list shape."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolServer(BaseModel):
    """A collection of tools. ``local`` servers are served by the gateway."""

    id: str
    name: str
    type: str = "local"
    status: str = "stopped"
    port: int | None = None
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)


class SkillDefinition(BaseModel):
    id: str
    name: str
    description: str = ""
    content: str = ""
    allowed_tools: list[str] = Field(default_factory=list)
    version: str = "1.0.0"
    enabled: bool = True
