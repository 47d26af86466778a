"""ProcessSupervisor: start, stop and watch agent worker processes.

Each worker runs as a real OS process on its permanently assigned port.
The supervisor frees the port, spawns the worker, waits for ``/health``,
pushes configuration, and observes the process until it exits.

Public operations never raise: failures come back as ``StartResult`` /
``StopResult`` values carrying a ``SupervisorErrorCode``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from agentplane.config import AgentplaneSettings
from agentplane.events.bus import EventBus
from agentplane.exceptions import SupervisorError, SupervisorErrorCode
from agentplane.store.base import SupervisorStore
from agentplane.store.models import WorkerDescriptor
from agentplane.supervisor.client import WorkerClient
from agentplane.supervisor.config_sync import ConfigSynchronizer
from agentplane.supervisor.health import HealthProber, port_is_free
from agentplane.supervisor.providers import EMBEDDINGS_PROVIDER, get_provider
from agentplane.supervisor.reclaim import LsofPortReclaimer, PortReclaimer
from agentplane.supervisor.table import ProcessTable, RunningProcessHandle
from agentplane.types import StopReason, WorkerStatus

_logger = logging.getLogger(__name__)

_OUTPUT_LINES_KEPT = 200


class StartResult(BaseModel):
    worker_id: str
    ok: bool
    port: int | None = None
    error: SupervisorErrorCode | None = None
    message: str = ""


class StopResult(BaseModel):
    worker_id: str
    ok: bool
    reason: str = StopReason.USER_STOPPED.value
    error: SupervisorErrorCode | None = None
    message: str = ""


class ProcessSupervisor:
    """Owns the lifecycle of every worker process on this host."""

    def __init__(
        self,
        store: SupervisorStore,
        config_sync: ConfigSynchronizer,
        agents_dir: Path,
        command: list[str] | None = None,
        client: WorkerClient | None = None,
        prober: HealthProber | None = None,
        reclaimer: PortReclaimer | None = None,
        event_bus: EventBus | None = None,
        worker_host: str = "127.0.0.1",
        shutdown_timeout: float = 2.0,
        preflight_shutdown_wait: float = 1.5,
        reclaim_wait: float = 1.0,
        stop_grace: float = 0.5,
        kill_timeout: float = 5.0,
    ) -> None:
        self._store = store
        self._sync = config_sync
        self._agents_dir = Path(agents_dir)
        self._command = command or ["agent"]
        self._client = client or WorkerClient(host=worker_host)
        self._prober = prober or HealthProber(self._client)
        self._reclaimer = reclaimer or LsofPortReclaimer()
        self._bus = event_bus
        self._host = worker_host
        self._shutdown_timeout = shutdown_timeout
        self._preflight_shutdown_wait = preflight_shutdown_wait
        self._reclaim_wait = reclaim_wait
        self._stop_grace = stop_grace
        self._kill_timeout = kill_timeout
        self._table = ProcessTable()
        self._shutting_down = False

    @classmethod
    def from_settings(
        cls,
        store: SupervisorStore,
        cfg: AgentplaneSettings,
        event_bus: EventBus | None = None,
    ) -> ProcessSupervisor:
        client = WorkerClient(host=cfg.worker_host, timeout=cfg.config_push_timeout_s)
        prober = HealthProber(
            client,
            max_attempts=cfg.health_max_attempts,
            delay=cfg.health_delay_s,
            request_timeout=cfg.health_request_timeout_s,
        )
        sync = ConfigSynchronizer(store, client, cfg.base_url, worker_host="localhost")
        return cls(
            store,
            sync,
            agents_dir=cfg.agents_dir,
            command=[cfg.worker_binary],
            client=client,
            prober=prober,
            event_bus=event_bus,
            worker_host=cfg.worker_host,
            shutdown_timeout=cfg.shutdown_timeout_s,
        )

    @property
    def table(self) -> ProcessTable:
        return self._table

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def data_dir(self, worker_id: str) -> Path:
        return self._agents_dir / worker_id

    # ── Start ────────────────────────────────────────────────────

    async def start(self, worker: WorkerDescriptor, clean_data: bool = False) -> StartResult:
        """Start ``worker`` and return the port it is serving on."""
        refused = await self._table.try_begin_start(worker.id)
        if refused is not None:
            message = (
                "Worker is already running"
                if refused == SupervisorErrorCode.ALREADY_RUNNING
                else "Worker is already starting"
            )
            return StartResult(worker_id=worker.id, ok=False, error=refused, message=message)

        try:
            port = await self._start(worker, clean_data)
        except SupervisorError as e:
            _logger.error("Failed to start worker %s: %s", worker.id, e.message)
            return StartResult(worker_id=worker.id, ok=False, error=e.code, message=e.message)
        except Exception as e:
            _logger.exception("Unexpected error starting worker %s", worker.id)
            return StartResult(
                worker_id=worker.id, ok=False,
                error=SupervisorErrorCode.INTERNAL, message=str(e),
            )
        finally:
            await self._table.end_start(worker.id)

        return StartResult(worker_id=worker.id, ok=True, port=port)

    async def _start(self, worker: WorkerDescriptor, clean_data: bool) -> int:
        if shutil.which(self._command[0]) is None:
            raise SupervisorError(
                SupervisorErrorCode.BINARY_UNAVAILABLE,
                f"Worker executable not found: {self._command[0]}",
            )
        provider = get_provider(worker.provider)
        if provider is None:
            raise SupervisorError(
                SupervisorErrorCode.UNKNOWN_PROVIDER, f"Unknown provider: {worker.provider}",
            )
        provider_key = await self._store.get_provider_key(worker.provider)
        if not provider_key:
            raise SupervisorError(
                SupervisorErrorCode.MISSING_PROVIDER_KEY,
                f"No API key configured for {provider.name}",
            )

        port = worker.port
        if port is None:
            raise SupervisorError(
                SupervisorErrorCode.NO_PORT_ASSIGNED, f"Worker {worker.id} has no port assigned",
            )

        await self._free_port(port)

        workdir = self.data_dir(worker.id)
        if clean_data and workdir.exists():
            shutil.rmtree(workdir)
            _logger.info("Cleaned data directory for worker %s", worker.id)
        workdir.mkdir(parents=True, exist_ok=True)

        api_key = await self._store.ensure_api_key(worker.id)
        env = {
            **os.environ,
            "PORT": str(port),
            "DATA_DIR": str(workdir),
            "CONFIG_PATH": str(workdir / "agent-config.json"),
            "AGENT_API_KEY": api_key,
            provider.env_var: provider_key,
        }
        if worker.features.memory and worker.provider != EMBEDDINGS_PROVIDER:
            embeddings_key = await self._store.get_provider_key(EMBEDDINGS_PROVIDER)
            if embeddings_key:
                env[get_provider(EMBEDDINGS_PROVIDER).env_var] = embeddings_key

        handle = await self._spawn(worker.id, port, workdir, env)
        try:
            await self._bring_up(worker, handle)
        except Exception:
            # A start that fails after spawn leaves nothing running behind.
            await self._table.remove(worker.id, handle)
            await self._terminate(handle)
            raise

        _logger.info("Worker %s started on port %d (pid %d)", worker.id, port, handle.pid)
        await self._emit("worker.started", {
            "worker_id": worker.id,
            "port": port,
            "os_pid": handle.pid,
        })
        return port

    async def _bring_up(self, worker: WorkerDescriptor, handle: RunningProcessHandle) -> None:
        """Wait for health, configure, and mark the worker running."""
        port = handle.port
        if not await self._prober.wait_for_health(port):
            await self._table.remove(worker.id, handle)
            await self._terminate(handle)
            detail = handle.stderr_tail()
            raise SupervisorError(
                SupervisorErrorCode.HEALTH_CHECK_TIMEOUT,
                f"Worker did not become healthy on port {port}"
                + (f": {detail}" if detail else ""),
            )

        await self._sync.push(worker, port)

        if await self._table.get(worker.id) is not handle:
            raise SupervisorError(
                SupervisorErrorCode.SPAWN_FAILED, "Worker process went away during startup",
            )

        await self._store.set_status(worker.id, WorkerStatus.RUNNING, WorkerStatus.RUNNING.value)

    async def _free_port(self, port: int) -> None:
        """Make sure nothing holds ``port``: ask politely, then force."""
        if await self._prober.answers(port, timeout=0.5):
            _logger.info("Port %d already answers health checks; asking it to shut down", port)
            await self._client.request_shutdown(port, timeout=1.0)
            await asyncio.sleep(self._preflight_shutdown_wait)

        if port_is_free(port, self._host):
            return

        _logger.warning("Port %d still bound; reclaiming", port)
        await self._reclaimer.reclaim(port)
        await asyncio.sleep(self._reclaim_wait)
        if not port_is_free(port, self._host):
            raise SupervisorError(
                SupervisorErrorCode.PORT_IN_USE, f"Port {port} is in use and could not be freed",
            )

    async def _spawn(
        self, worker_id: str, port: int, workdir: Path, env: dict[str, str],
    ) -> RunningProcessHandle:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(workdir),
                env=env,
            )
        except OSError as e:
            raise SupervisorError(SupervisorErrorCode.SPAWN_FAILED, str(e)) from e

        handle = RunningProcessHandle(worker_id=worker_id, process=proc, port=port)
        await self._table.register(handle)
        handle.reader = asyncio.create_task(self._read_output(handle))
        handle.observer = asyncio.create_task(self._observe_exit(handle))
        _logger.debug("Spawned worker %s as pid %d", worker_id, proc.pid)
        return handle

    async def _read_output(self, handle: RunningProcessHandle) -> None:
        """Drain stdout/stderr so the worker never blocks on a full pipe."""

        async def _read_stream(stream, target: list[str]) -> None:
            while True:
                line = await stream.readline()
                if not line:
                    break
                target.append(line.decode("utf-8", errors="replace").rstrip())
                if len(target) > _OUTPUT_LINES_KEPT:
                    del target[:_OUTPUT_LINES_KEPT // 2]

        await asyncio.gather(
            _read_stream(handle.process.stdout, handle.stdout_lines),
            _read_stream(handle.process.stderr, handle.stderr_lines),
            return_exceptions=True,
        )

    async def _observe_exit(self, handle: RunningProcessHandle) -> None:
        exit_code = await handle.process.wait()
        if handle.reader:
            await asyncio.gather(handle.reader, return_exceptions=True)
        if self._shutting_down:
            return
        # Explicit stops and failed starts remove the handle before killing.
        if await self._table.remove(handle.worker_id, handle) is None:
            return

        reason = StopReason.EXITED if exit_code == 0 else StopReason.CRASHED
        if reason == StopReason.CRASHED:
            _logger.warning(
                "Worker %s crashed (exit %s): %s",
                handle.worker_id, exit_code, handle.stderr_tail()[:500],
            )
        else:
            _logger.info("Worker %s exited", handle.worker_id)
        try:
            await self._mark_stopped(handle.worker_id, reason, exit_code=exit_code)
        except Exception:
            _logger.exception("Failed to record exit of worker %s", handle.worker_id)

    async def _terminate(self, handle: RunningProcessHandle) -> None:
        proc = handle.process
        if proc.returncode is None:
            try:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self._kill_timeout)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
            except ProcessLookupError:
                pass
        if handle.reader:
            await asyncio.gather(handle.reader, return_exceptions=True)

    # ── Stop ─────────────────────────────────────────────────────

    async def stop(
        self,
        worker: WorkerDescriptor,
        reason: StopReason | str = StopReason.USER_STOPPED,
    ) -> StopResult:
        """Stop ``worker``: graceful request, then kill, then free the port.

        The status always ends up ``stopped`` with ``reason``. Stopping a
        worker whose start is still in flight kills whatever handle is
        registered at that moment; the start then fails and leaves nothing
        running.
        """
        reason = reason.value if isinstance(reason, StopReason) else reason
        try:
            handle = await self._table.remove(worker.id)
            port = handle.port if handle else worker.port
            if port is not None:
                await self._client.request_shutdown(port, timeout=self._shutdown_timeout)
                await asyncio.sleep(self._stop_grace)
            if handle:
                await self._terminate(handle)
            if port is not None and not port_is_free(port, self._host):
                _logger.warning("Port %d still bound after stopping %s; reclaiming", port, worker.id)
                await self._reclaimer.reclaim(port)
            await self._mark_stopped(worker.id, reason)
        except Exception as e:
            _logger.exception("Failed to stop worker %s", worker.id)
            return StopResult(
                worker_id=worker.id, ok=False, reason=reason,
                error=SupervisorErrorCode.INTERNAL, message=str(e),
            )
        _logger.info("Worker %s stopped (%s)", worker.id, reason)
        return StopResult(worker_id=worker.id, ok=True, reason=reason)

    async def _mark_stopped(self, worker_id: str, reason: str, **extra: Any) -> None:
        await self._store.set_status(worker_id, WorkerStatus.STOPPED, reason)
        await self._emit("worker.stopped", {"worker_id": worker_id, "reason": reason, **extra})

    async def restart(
        self,
        worker: WorkerDescriptor,
        reason: StopReason | str = StopReason.RESTART,
        clean_data: bool = False,
    ) -> StartResult:
        stopped = await self.stop(worker, reason)
        if not stopped.ok:
            return StartResult(
                worker_id=worker.id, ok=False, error=stopped.error, message=stopped.message,
            )
        return await self.start(worker, clean_data=clean_data)

    async def sync_config(self, worker: WorkerDescriptor) -> bool:
        """Push fresh configuration to a running worker without restarting it."""
        handle = await self._table.get(worker.id)
        if handle is None:
            return False
        return await self._sync.push(worker, handle.port)

    async def remove(self, worker: WorkerDescriptor) -> StopResult:
        """Stop the worker and delete its data directory."""
        result = await self.stop(worker, StopReason.DELETED)
        workdir = self.data_dir(worker.id)
        if workdir.exists():
            shutil.rmtree(workdir, ignore_errors=True)
            _logger.info("Removed data directory for worker %s", worker.id)
        return result

    # ── Host lifecycle ───────────────────────────────────────────

    async def shutdown(self) -> None:
        """Terminate every worker, leaving stored statuses as they are.

        Workers still marked ``running`` are picked up again by
        ``resume_running`` on the next boot.
        """
        self._shutting_down = True
        handles = await self._table.drain()
        if handles:
            _logger.info("Stopping %d worker(s) for shutdown", len(handles))
        await asyncio.gather(*(self._terminate(h) for h in handles), return_exceptions=True)
        for h in handles:
            if h.observer:
                h.observer.cancel()

    async def resume_running(self) -> list[StartResult]:
        """Restart workers that were running when the previous host exited."""
        workers = await self._store.find_running()
        for worker in workers:
            await self._store.set_status(worker.id, WorkerStatus.STOPPED, StopReason.BOOT_RESET.value)

        results = []
        for worker in workers:
            result = await self.start(worker)
            if result.ok:
                _logger.info("Resumed worker %s on port %d", worker.id, result.port)
            results.append(result)
        return results

    async def health_probe(self, port: int, max_attempts: int = 30, delay: float = 0.2) -> bool:
        return await self._prober.wait_for_health(port, max_attempts=max_attempts, delay=delay)

    # ── Introspection ────────────────────────────────────────────

    def is_running(self, worker_id: str) -> bool:
        return worker_id in self._table.snapshot()

    def list_processes(self) -> list[dict[str, Any]]:
        return [
            {
                "worker_id": h.worker_id,
                "port": h.port,
                "os_pid": h.pid,
                "started_at": h.started_at,
            }
            for h in self._table.snapshot().values()
        ]

    def get_output(self, worker_id: str, lines: int = 50) -> dict[str, list[str]]:
        handle = self._table.snapshot().get(worker_id)
        if not handle:
            return {"stdout": [], "stderr": []}
        return {"stdout": handle.stdout_lines[-lines:], "stderr": handle.stderr_lines[-lines:]}

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(topic, data, source="supervisor")
