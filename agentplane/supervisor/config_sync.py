"""Config Synchronizer: builds a worker's configuration document and pushes it.

The document is a flat JSON object posted to the worker's ``/config``.
Skills go separately through ``/skills``. Push failures are logged and
reported as False, never raised: a running worker with a stale
configuration is still usable.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from agentplane.store.base import ConfigSourceStore
from agentplane.store.models import SkillDefinition, ToolServer, WorkerDescriptor
from agentplane.supervisor.client import WorkerCallError, WorkerClient

_logger = logging.getLogger(__name__)


def gateway_url(public_base: str, server_id: str) -> str:
    return f"{public_base}/api/mcp/servers/{server_id}/mcp"


def server_entry(server: ToolServer, public_base: str) -> dict[str, Any] | None:
    """How a worker should reach one bound tool server, or None if it can't."""
    if server.type == "local" and server.status == "running":
        url, headers = gateway_url(public_base, server.id), {}
    elif server.type == "http" and server.url:
        url, headers = server.url, dict(server.headers)
    elif server.status == "running" and server.port:
        url, headers = f"http://localhost:{server.port}/mcp", {}
    else:
        return None
    return {
        "name": server.name,
        "type": "http",
        "url": url,
        "headers": headers,
        "enabled": True,
    }


def skill_entry(skill: SkillDefinition) -> dict[str, Any]:
    return {
        "name": skill.name,
        "description": skill.description,
        "instructions": skill.content,
        "icon": "",
        "category": "",
        "tags": [],
        "tools": list(skill.allowed_tools),
        "enabled": True,
    }


def build_worker_config(
    worker: WorkerDescriptor,
    servers: list[ToolServer],
    skills: list[SkillDefinition],
    public_base: str,
    worker_host: str = "localhost",
) -> dict[str, Any]:
    """Assemble the full configuration document for ``worker``."""
    features = worker.features
    builtin_tools = []
    if features.builtin_tools.web_search:
        builtin_tools.append({"type": "web_search_20250305", "name": "web_search"})
    if features.builtin_tools.web_fetch:
        builtin_tools.append({"type": "web_fetch_20250910", "name": "web_fetch"})

    mcp_servers = [e for e in (server_entry(s, public_base) for s in servers) if e]
    definitions = [skill_entry(s) for s in skills if s.enabled]
    multi = features.multi_agent(worker.project_id)
    worker_url = f"http://{worker_host}:{worker.port}"

    return {
        "id": worker.id,
        "name": worker.name,
        "description": worker.system_prompt,
        "public_url": worker_url,
        "llm": {
            "provider": worker.provider,
            "model": worker.model,
            "max_tokens": 4000,
            "temperature": 0.7,
            "system_prompt": worker.system_prompt,
            "vision": {
                "enabled": features.vision,
                "max_images": 20,
                "max_image_size": 5 * 1024 * 1024,
                "allowed_types": ["jpeg", "png", "gif", "webp"],
                "resize_images": True,
                "max_dimension": 1568,
                "pdf": {
                    "enabled": features.vision,
                    "max_file_size": 32 * 1024 * 1024,
                    "max_pages": 100,
                    "allow_urls": True,
                },
            },
            "parallel_tools": {"enabled": True, "max_concurrent": 10},
            # Empty list clears any stale whitelist on the worker.
            "tools": [],
            "builtin_tools": builtin_tools,
        },
        "tasks": {
            "enabled": features.tasks,
            "allow_scheduling": True,
            "allow_recurring": True,
            "max_tasks": 100,
            "auto_execute": False,
        },
        "scheduler": {"enabled": features.tasks, "interval": "1m", "max_tasks": 100},
        "memory": {
            "enabled": features.memory,
            "embedding_model": "text-embedding-3-small",
            "decision_model": "gpt-4o-mini",
            "max_memories_per_query": 20,
            "min_importance": 0.3,
            "min_similarity": 0.3,
            "auto_prune": True,
            "max_memories": 10000,
            "embedding_provider": "openai",
            "auto_extract_memories": True if features.memory else None,
            "auto_ingest_files": True,
        },
        "operator": {
            "enabled": features.operator,
            "virtual_browser": "http://localhost:8098",
            "display_width": 1024,
            "display_height": 768,
            "max_actions_per_turn": 5,
        },
        "mcp": {
            "enabled": features.mcp,
            "timeout": "30s",
            "retry_count": 3,
            "cache_ttl": "15m",
            "servers": mcp_servers,
        },
        "realtime": {
            "enabled": features.realtime,
            "provider": "openai",
            "model": "gpt-4o-realtime-preview",
            "voice": "alloy",
        },
        "context": {"max_messages": 30, "max_tokens": 0, "keep_images": 5},
        "filesystem": {
            "enabled": True,
            "max_file_size": 10 * 1024 * 1024,
            "max_total_size": 100 * 1024 * 1024,
            "auto_extract": True,
            "auto_cleanup": True,
            "retention_days": 7,
        },
        "telemetry": {
            "enabled": True,
            "endpoint": f"{public_base}/api/telemetry",
            "batch_size": 1,
            "flush_interval": 1,
            "categories": [],
        },
        "skills": {"enabled": bool(definitions), "definitions": definitions},
        "agents": {
            "enabled": multi.enabled,
            "mode": multi.mode,
            "group": multi.group,
            "url": worker_url,
            "discovery_url": f"{public_base}/api/discovery/agents",
        },
    }


class ConfigSynchronizer:
    """Resolves a worker's bindings from the store and pushes its configuration."""

    def __init__(
        self,
        store: ConfigSourceStore,
        client: WorkerClient,
        public_base: str,
        worker_host: str = "localhost",
    ) -> None:
        self._store = store
        self._client = client
        self._public_base = public_base.rstrip("/")
        self._worker_host = worker_host

    async def build(self, worker: WorkerDescriptor) -> dict[str, Any]:
        servers = []
        for server_id in worker.mcp_servers:
            server = await self._store.get_server(server_id)
            if server:
                servers.append(server)
        skills = []
        for skill_id in worker.skills:
            skill = await self._store.get_skill(skill_id)
            if skill:
                skills.append(skill)
        return build_worker_config(
            worker, servers, skills, self._public_base, self._worker_host,
        )

    async def push(self, worker: WorkerDescriptor, port: int) -> bool:
        """Push configuration then skills. Returns False if either step failed."""
        try:
            api_key = await self._store.ensure_api_key(worker.id)
            document = await self.build(worker)
        except Exception:
            _logger.exception("Could not build configuration for worker %s", worker.id)
            return False

        ok = True
        try:
            await self._client.post_config(port, api_key, document)
            _logger.info("Configuration applied to worker %s", worker.id)
        except (WorkerCallError, httpx.HTTPError) as e:
            _logger.error("Failed to configure worker %s: %s", worker.id, e)
            ok = False

        definitions = document["skills"]["definitions"]
        if definitions and not await self.push_skills(worker.id, port, api_key, definitions):
            ok = False
        return ok

    async def push_skills(
        self, worker_id: str, port: int, api_key: str, definitions: list[dict[str, Any]],
    ) -> bool:
        try:
            for skill in definitions:
                try:
                    await self._client.push_skill(port, api_key, skill)
                except WorkerCallError as e:
                    _logger.error(
                        "Failed to push skill %s to worker %s: %s",
                        skill["name"], worker_id, e,
                    )
            await self._client.set_skills_status(port, api_key, True)
        except (WorkerCallError, httpx.HTTPError) as e:
            _logger.error("Failed to push skills to worker %s: %s", worker_id, e)
            return False
        _logger.info("Pushed %d skill(s) to worker %s", len(definitions), worker_id)
        return True
