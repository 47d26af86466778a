"""Tests for the SQLite store."""

import pytest

from agentplane.exceptions import StoreError, WorkerNotFoundError
from agentplane.store.base import SupervisorStore, ToolStore
from agentplane.store.models import (
    HttpConfig,
    SkillDefinition,
    ToolDefinition,
    WorkerFeatures,
)
from agentplane.types import HandlerType, ResourceClass, WorkerStatus


class TestWorkers:
    @pytest.mark.asyncio
    async def test_create_assigns_port_and_key(self, sqlite_store):
        w1 = await sqlite_store.create_worker("one", "claude-sonnet", "anthropic")
        w2 = await sqlite_store.create_worker("two", "gpt-4o", "openai")

        assert w1.port == 4100
        assert w2.port == 4101
        assert w1.status == WorkerStatus.STOPPED
        key = await sqlite_store.get_api_key(w1.id)
        assert key.startswith("agt_")
        assert len(key) == 4 + 48

    @pytest.mark.asyncio
    async def test_ensure_api_key_reuses_existing(self, sqlite_store):
        w = await sqlite_store.create_worker("one", "m", "anthropic")
        first = await sqlite_store.ensure_api_key(w.id)
        assert await sqlite_store.ensure_api_key(w.id) == first

    @pytest.mark.asyncio
    async def test_features_round_trip(self, sqlite_store):
        features = WorkerFeatures(memory=False, mcp=True, agents={"enabled": True, "group": "g1"})
        features.builtin_tools.web_search = True
        w = await sqlite_store.create_worker("one", "m", "anthropic", features=features)

        loaded = await sqlite_store.get_worker(w.id)
        assert loaded.features.memory is False
        assert loaded.features.mcp is True
        assert loaded.features.builtin_tools.web_search is True
        assert loaded.features.multi_agent().group == "g1"

    @pytest.mark.asyncio
    async def test_set_status_and_find_running(self, sqlite_store):
        a = await sqlite_store.create_worker("a", "m", "anthropic")
        await sqlite_store.create_worker("b", "m", "anthropic")

        await sqlite_store.set_status(a.id, WorkerStatus.RUNNING, "running")
        running = await sqlite_store.find_running()
        assert [w.id for w in running] == [a.id]

        await sqlite_store.reset_all_status()
        assert await sqlite_store.find_running() == []
        assert (await sqlite_store.get_worker(a.id)).status_reason == "boot_reset"

    @pytest.mark.asyncio
    async def test_update_keeps_port(self, sqlite_store):
        w = await sqlite_store.create_worker("a", "m", "anthropic")
        updated = await sqlite_store.update_worker(w.id, model="m2", skills=["s1"])

        assert updated.model == "m2"
        assert updated.skills == ["s1"]
        assert updated.port == w.port

    @pytest.mark.asyncio
    async def test_update_rejects_status_and_port(self, sqlite_store):
        w = await sqlite_store.create_worker("a", "m", "anthropic")
        with pytest.raises(StoreError):
            await sqlite_store.update_worker(w.id, port=9999)

    @pytest.mark.asyncio
    async def test_update_missing_worker(self, sqlite_store):
        with pytest.raises(WorkerNotFoundError):
            await sqlite_store.update_worker("nope", model="m")

    @pytest.mark.asyncio
    async def test_delete_releases_port(self, sqlite_store):
        w = await sqlite_store.create_worker("a", "m", "anthropic")
        await sqlite_store.delete_worker(w.id)

        assert await sqlite_store.get_worker(w.id) is None
        assert await sqlite_store.ports.lookup(ResourceClass.AGENT, w.id) is None


class TestProviderKeys:
    @pytest.mark.asyncio
    async def test_set_and_get(self, sqlite_store):
        assert await sqlite_store.get_provider_key("anthropic") is None
        await sqlite_store.set_provider_key("anthropic", "sk-ant-1")
        await sqlite_store.set_provider_key("anthropic", "sk-ant-2")
        assert await sqlite_store.get_provider_key("anthropic") == "sk-ant-2"


class TestToolsAndSkills:
    @pytest.mark.asyncio
    async def test_local_server_env_is_decrypted(self, sqlite_store):
        server = await sqlite_store.create_server("Local", env={"API_KEY": "secret"})
        loaded = await sqlite_store.get_server(server.id)

        assert loaded.type == "local"
        assert loaded.status == "running"
        assert loaded.port is None
        assert loaded.env == {"API_KEY": "secret"}

    @pytest.mark.asyncio
    async def test_subprocess_server_gets_mcp_port(self, sqlite_store):
        server = await sqlite_store.create_server("npm thing", type="npm")
        assert server.port == 4200

    @pytest.mark.asyncio
    async def test_upsert_and_find_tool(self, sqlite_store):
        server = await sqlite_store.create_server("Local")
        await sqlite_store.upsert_tool(ToolDefinition(
            server_id=server.id,
            name="weather",
            handler_type=HandlerType.HTTP,
            http_config=HttpConfig(url="https://api.example.com/{{args.city}}"),
        ))
        await sqlite_store.upsert_tool(ToolDefinition(
            server_id=server.id, name="echo", mock_response={"echo": "{{args.text}}"},
        ))
        await sqlite_store.upsert_tool(ToolDefinition(
            server_id=server.id, name="echo", mock_response={"v": 2}, enabled=False,
        ))

        tools = await sqlite_store.list_tools(server.id)
        assert [t.name for t in tools] == ["echo", "weather"]

        echo = await sqlite_store.find_tool(server.id, "echo")
        assert echo.mock_response == {"v": 2}
        assert echo.enabled is False
        weather = await sqlite_store.find_tool(server.id, "weather")
        assert weather.http_config.url.endswith("{{args.city}}")
        assert await sqlite_store.find_tool(server.id, "missing") is None

    @pytest.mark.asyncio
    async def test_skill_round_trip(self, sqlite_store):
        await sqlite_store.upsert_skill(SkillDefinition(
            id="s1", name="summarize", content="Summarize things", allowed_tools=["echo"],
        ))
        skill = await sqlite_store.get_skill("s1")
        assert skill.allowed_tools == ["echo"]
        assert skill.enabled is True


@pytest.mark.asyncio
async def test_satisfies_store_protocols(sqlite_store, memory_store):
    for store in (sqlite_store, memory_store):
        assert isinstance(store, SupervisorStore)
        assert isinstance(store, ToolStore)
