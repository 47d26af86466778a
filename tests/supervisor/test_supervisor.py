"""Integration tests for ProcessSupervisor against a real (fake) worker process."""

from __future__ import annotations

import asyncio
import json
import socket
import sys
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from agentplane.events.bus import EventBus
from agentplane.exceptions import StoreError, SupervisorErrorCode
from agentplane.store.models import SkillDefinition, WorkerDescriptor, WorkerFeatures
from agentplane.supervisor.client import WorkerClient
from agentplane.supervisor.config_sync import ConfigSynchronizer
from agentplane.supervisor.health import HealthProber, port_is_free
from agentplane.supervisor.reclaim import NullPortReclaimer
from agentplane.supervisor.supervisor import ProcessSupervisor
from agentplane.types import StopReason, WorkerStatus

FAKE_WORKER = str(Path(__file__).parent / "fake_worker.py")


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


class NeverHealthy:
    """Prober stand-in whose worker never becomes ready."""

    async def wait_for_health(self, port, max_attempts=None, delay=None):
        return False

    async def answers(self, port, timeout=0.5):
        return False


class GatedProber:
    """Prober stand-in that holds a start at the health check until released."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def wait_for_health(self, port, max_attempts=None, delay=None):
        self.entered.set()
        await self.release.wait()
        return True

    async def answers(self, port, timeout=0.5):
        return False


class SocketReclaimer:
    """Reclaims a port by closing the test-held socket squatting on it."""

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.calls: list[int] = []

    async def reclaim(self, port: int) -> None:
        self.calls.append(port)
        self.sock.close()


def make_supervisor(store, tmp_path, bus=None, **overrides) -> ProcessSupervisor:
    client = WorkerClient()
    options = dict(
        agents_dir=tmp_path / "agents",
        command=[sys.executable, FAKE_WORKER],
        client=client,
        prober=HealthProber(client, max_attempts=100, delay=0.1),
        reclaimer=NullPortReclaimer(),
        event_bus=bus,
        preflight_shutdown_wait=0.1,
        reclaim_wait=0.1,
        stop_grace=0.1,
    )
    options.update(overrides)
    sync = ConfigSynchronizer(store, client, "http://localhost:4280")
    return ProcessSupervisor(store, sync, **options)


@pytest.fixture
def worker(memory_store, free_port):
    memory_store.provider_keys["anthropic"] = "sk-ant-test"
    return memory_store.add_worker(WorkerDescriptor(
        id="w1",
        name="Worker One",
        model="claude-sonnet",
        provider="anthropic",
        port=free_port(),
        features=WorkerFeatures(memory=False),
    ))


@pytest.fixture
def bus():
    return EventBus()


@pytest_asyncio.fixture
async def supervisor(memory_store, tmp_path, bus):
    sup = make_supervisor(memory_store, tmp_path, bus)
    yield sup
    await sup.shutdown()


def statuses(store, worker_id):
    return [(s, r) for wid, s, r in store.status_log if wid == worker_id]


class TestStart:
    @pytest.mark.asyncio
    async def test_start_runs_worker_and_pushes_config(
        self, supervisor, worker, memory_store, tmp_path, bus,
    ):
        result = await supervisor.start(worker)

        assert result.ok, result.message
        assert result.port == worker.port
        assert supervisor.is_running(worker.id)
        assert statuses(memory_store, worker.id)[-1] == (WorkerStatus.RUNNING, "running")

        data_dir = tmp_path / "agents" / worker.id
        env = json.loads((data_dir / "env.json").read_text())
        assert env["PORT"] == str(worker.port)
        assert env["DATA_DIR"] == str(data_dir)
        assert env["CONFIG_PATH"] == str(data_dir / "agent-config.json")
        assert env["AGENT_API_KEY"] == memory_store.api_keys[worker.id]
        assert env["ANTHROPIC_API_KEY"] == "sk-ant-test"

        config = json.loads((data_dir / "config.json").read_text())
        assert config["id"] == worker.id
        assert config["llm"]["provider"] == "anthropic"

        assert [e.topic for e in bus.history(topic_filter="worker.*")] == ["worker.started"]

    @pytest.mark.asyncio
    async def test_memory_feature_adds_embeddings_key(self, supervisor, worker, memory_store, tmp_path):
        worker = memory_store.add_worker(worker.model_copy(update={
            "features": WorkerFeatures(memory=True),
        }))
        memory_store.provider_keys["openai"] = "sk-openai"

        assert (await supervisor.start(worker)).ok
        env = json.loads((tmp_path / "agents" / worker.id / "env.json").read_text())
        assert env["OPENAI_API_KEY"] == "sk-openai"

    @pytest.mark.asyncio
    async def test_second_start_fails_without_killing_first(self, supervisor, worker):
        first = await supervisor.start(worker)
        assert first.ok
        pid = supervisor.list_processes()[0]["os_pid"]

        second = await supervisor.start(worker)
        assert not second.ok
        assert second.error == SupervisorErrorCode.ALREADY_RUNNING
        assert supervisor.list_processes()[0]["os_pid"] == pid
        assert await WorkerClient().health(worker.port)

    @pytest.mark.asyncio
    async def test_concurrent_starts_only_one_wins(self, supervisor, worker):
        results = await asyncio.gather(supervisor.start(worker), supervisor.start(worker))

        winners = [r for r in results if r.ok]
        losers = [r for r in results if not r.ok]
        assert len(winners) == 1
        assert losers[0].error == SupervisorErrorCode.ALREADY_STARTING
        assert len(supervisor.list_processes()) == 1

    @pytest.mark.asyncio
    async def test_skills_pushed_put_then_post(self, supervisor, worker, memory_store, tmp_path):
        memory_store.skills["s1"] = SkillDefinition(
            id="s1", name="summarize", content="Summarize", allowed_tools=["echo"],
        )
        worker = memory_store.add_worker(worker.model_copy(update={"skills": ["s1"]}))

        assert (await supervisor.start(worker)).ok
        data_dir = tmp_path / "agents" / worker.id
        skills = json.loads((data_dir / "skills.json").read_text())
        assert skills["last"] == "POST"
        assert skills["skills"]["summarize"]["instructions"] == "Summarize"
        assert json.loads((data_dir / "skills_status.json").read_text()) == {"enabled": True}


class TestStartFailures:
    @pytest.mark.asyncio
    async def test_health_timeout_is_fail_closed(self, memory_store, tmp_path, worker):
        sup = make_supervisor(memory_store, tmp_path, prober=NeverHealthy())
        try:
            result = await sup.start(worker)

            assert not result.ok
            assert result.error == SupervisorErrorCode.HEALTH_CHECK_TIMEOUT
            assert await sup.table.get(worker.id) is None
            assert not sup.table.is_starting(worker.id)
            assert sup.list_processes() == []
            await wait_until(lambda: port_is_free(worker.port))
        finally:
            await sup.shutdown()

    @pytest.mark.asyncio
    async def test_config_build_error_does_not_fail_start(self, supervisor, worker, memory_store):
        worker = memory_store.add_worker(worker.model_copy(update={"mcp_servers": ["s1"]}))

        async def broken_get_server(server_id):
            raise StoreError("database is locked")

        memory_store.get_server = broken_get_server

        result = await supervisor.start(worker)

        assert result.ok, result.message
        assert supervisor.is_running(worker.id)
        assert statuses(memory_store, worker.id)[-1] == (WorkerStatus.RUNNING, "running")

    @pytest.mark.asyncio
    async def test_error_after_spawn_kills_process(self, supervisor, worker, memory_store):
        record_status = memory_store.set_status

        async def failing_set_status(worker_id, status, reason=""):
            if status == WorkerStatus.RUNNING:
                raise StoreError("disk full")
            return await record_status(worker_id, status, reason)

        memory_store.set_status = failing_set_status

        result = await supervisor.start(worker)

        assert not result.ok
        assert result.error == SupervisorErrorCode.INTERNAL
        assert "disk full" in result.message
        assert await supervisor.table.get(worker.id) is None
        assert not supervisor.table.is_starting(worker.id)
        assert supervisor.list_processes() == []
        await wait_until(lambda: port_is_free(worker.port))

        memory_store.set_status = record_status
        assert (await supervisor.start(worker)).ok

    @pytest.mark.asyncio
    async def test_stop_during_start_leaves_nothing_running(self, memory_store, tmp_path, worker):
        prober = GatedProber()
        sup = make_supervisor(memory_store, tmp_path, prober=prober)
        try:
            starting = asyncio.create_task(sup.start(worker))
            await asyncio.wait_for(prober.entered.wait(), timeout=5)

            stopped = await sup.stop(worker)
            prober.release.set()
            result = await starting

            assert stopped.ok
            assert not result.ok
            assert result.error == SupervisorErrorCode.SPAWN_FAILED
            assert await sup.table.get(worker.id) is None
            assert not sup.table.is_starting(worker.id)
            assert sup.list_processes() == []
            await wait_until(lambda: port_is_free(worker.port))
            await asyncio.sleep(0.2)
            assert statuses(memory_store, worker.id) == [(WorkerStatus.STOPPED, "user_stopped")]
        finally:
            await sup.shutdown()

    @pytest.mark.asyncio
    async def test_no_port_assigned(self, supervisor, worker, memory_store):
        worker = memory_store.add_worker(worker.model_copy(update={"port": None}))
        result = await supervisor.start(worker)
        assert result.error == SupervisorErrorCode.NO_PORT_ASSIGNED
        assert not supervisor.table.is_starting(worker.id)

    @pytest.mark.asyncio
    async def test_missing_provider_key(self, supervisor, worker, memory_store):
        memory_store.provider_keys.clear()
        result = await supervisor.start(worker)
        assert result.error == SupervisorErrorCode.MISSING_PROVIDER_KEY

    @pytest.mark.asyncio
    async def test_unknown_provider(self, supervisor, worker, memory_store):
        worker = memory_store.add_worker(worker.model_copy(update={"provider": "nonesuch"}))
        result = await supervisor.start(worker)
        assert result.error == SupervisorErrorCode.UNKNOWN_PROVIDER

    @pytest.mark.asyncio
    async def test_binary_unavailable(self, memory_store, tmp_path, worker):
        sup = make_supervisor(memory_store, tmp_path, command=[str(tmp_path / "no-such-agent")])
        result = await sup.start(worker)
        assert result.error == SupervisorErrorCode.BINARY_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_port_in_use_when_reclaim_fails(self, supervisor, worker):
        squatter = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        squatter.bind(("127.0.0.1", worker.port))
        squatter.listen(1)
        try:
            result = await supervisor.start(worker)
            assert result.error == SupervisorErrorCode.PORT_IN_USE
            assert supervisor.list_processes() == []
        finally:
            squatter.close()

    @pytest.mark.asyncio
    async def test_unresponsive_squatter_is_reclaimed(self, memory_store, tmp_path, worker):
        squatter = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        squatter.bind(("127.0.0.1", worker.port))
        squatter.listen(1)
        reclaimer = SocketReclaimer(squatter)
        sup = make_supervisor(memory_store, tmp_path, reclaimer=reclaimer)
        try:
            result = await sup.start(worker)
            assert result.ok, result.message
            assert reclaimer.calls == [worker.port]
        finally:
            squatter.close()
            await sup.shutdown()


class TestStopAndExit:
    @pytest.mark.asyncio
    async def test_stop_frees_port_and_records_reason(self, supervisor, worker, memory_store, bus):
        assert (await supervisor.start(worker)).ok

        result = await supervisor.stop(worker)

        assert result.ok
        assert not supervisor.is_running(worker.id)
        assert port_is_free(worker.port)
        assert statuses(memory_store, worker.id)[-1] == (WorkerStatus.STOPPED, "user_stopped")
        stopped = bus.history(topic_filter="worker.stopped")
        assert [e.data["reason"] for e in stopped] == ["user_stopped"]

    @pytest.mark.asyncio
    async def test_stop_when_not_running_still_marks_stopped(self, supervisor, worker, memory_store):
        result = await supervisor.stop(worker, StopReason.PROVIDER_CHANGED)
        assert result.ok
        assert statuses(memory_store, worker.id)[-1] == (WorkerStatus.STOPPED, "provider_changed")

    @pytest.mark.asyncio
    async def test_port_stable_across_cycles(self, supervisor, worker):
        ports = []
        for _ in range(2):
            result = await supervisor.start(worker)
            assert result.ok, result.message
            ports.append(result.port)
            assert (await supervisor.stop(worker)).ok
        assert ports == [worker.port, worker.port]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,reason", [(0, "exited"), (3, "crashed")])
    async def test_unexpected_exit_marks_stopped(
        self, supervisor, worker, memory_store, code, reason,
    ):
        assert (await supervisor.start(worker)).ok

        async with httpx.AsyncClient(timeout=2.0) as client:
            await client.post(f"http://127.0.0.1:{worker.port}/exit?code={code}")

        await wait_until(lambda: statuses(memory_store, worker.id)[-1][0] == WorkerStatus.STOPPED)
        assert statuses(memory_store, worker.id)[-1] == (WorkerStatus.STOPPED, reason)
        assert not supervisor.is_running(worker.id)

    @pytest.mark.asyncio
    async def test_restart(self, supervisor, worker, memory_store):
        assert (await supervisor.start(worker)).ok
        result = await supervisor.restart(worker, StopReason.PROVIDER_CHANGED)

        assert result.ok, result.message
        assert statuses(memory_store, worker.id)[-2:] == [
            (WorkerStatus.STOPPED, "provider_changed"),
            (WorkerStatus.RUNNING, "running"),
        ]

    @pytest.mark.asyncio
    async def test_remove_deletes_data_dir(self, supervisor, worker, tmp_path):
        assert (await supervisor.start(worker)).ok
        data_dir = tmp_path / "agents" / worker.id
        assert data_dir.exists()

        result = await supervisor.remove(worker)

        assert result.reason == "deleted"
        assert not data_dir.exists()


class TestHostLifecycle:
    @pytest.mark.asyncio
    async def test_shutdown_leaves_status_running(self, memory_store, tmp_path, worker):
        sup = make_supervisor(memory_store, tmp_path)
        assert (await sup.start(worker)).ok

        await sup.shutdown()
        await asyncio.sleep(0.3)

        assert sup.shutting_down
        assert statuses(memory_store, worker.id)[-1] == (WorkerStatus.RUNNING, "running")
        assert memory_store.workers[worker.id].status == WorkerStatus.RUNNING

    @pytest.mark.asyncio
    async def test_resume_running_restarts_workers(self, supervisor, worker, memory_store):
        memory_store.add_worker(worker.model_copy(update={"status": WorkerStatus.RUNNING}))

        results = await supervisor.resume_running()

        assert [r.ok for r in results] == [True]
        assert statuses(memory_store, worker.id) == [
            (WorkerStatus.STOPPED, "boot_reset"),
            (WorkerStatus.RUNNING, "running"),
        ]

    @pytest.mark.asyncio
    async def test_sync_config_requires_running_worker(self, supervisor, worker, tmp_path):
        assert await supervisor.sync_config(worker) is False

        assert (await supervisor.start(worker)).ok
        config_file = tmp_path / "agents" / worker.id / "config.json"
        config_file.unlink()

        assert await supervisor.sync_config(worker) is True
        assert config_file.exists()

    @pytest.mark.asyncio
    async def test_health_probe_on_dead_port(self, supervisor, free_port):
        assert await supervisor.health_probe(free_port(), max_attempts=2, delay=0.01) is False
