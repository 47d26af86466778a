"""Control app: FastAPI surface for the supervisor and the tool gateway.

`agentplane serve` runs this at localhost:4280. Workers reach back to it for
tools (``/api/mcp/servers/{id}/mcp``) and peer discovery.
"""

from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse

from agentplane import __version__
from agentplane.exceptions import SupervisorErrorCode
from agentplane.gateway.server import router as gateway_router
from agentplane.store.models import WorkerDescriptor
from agentplane.types import StopReason, WorkerStatus

control_app = FastAPI(title="agentplane", version=__version__)
control_app.include_router(gateway_router)

_store = None
_supervisor = None
_event_bus = None
_start_time = time.time()

_ERROR_STATUS = {
    SupervisorErrorCode.ALREADY_RUNNING: 409,
    SupervisorErrorCode.ALREADY_STARTING: 409,
    SupervisorErrorCode.PORT_IN_USE: 409,
    SupervisorErrorCode.NO_PORT_ASSIGNED: 400,
    SupervisorErrorCode.UNKNOWN_PROVIDER: 400,
    SupervisorErrorCode.MISSING_PROVIDER_KEY: 400,
    SupervisorErrorCode.BINARY_UNAVAILABLE: 503,
    SupervisorErrorCode.HEALTH_CHECK_TIMEOUT: 504,
}


def configure(store=None, supervisor=None, event_bus=None) -> None:
    global _store, _supervisor, _event_bus
    _store = store
    _supervisor = supervisor
    _event_bus = event_bus


def _not_ready() -> JSONResponse:
    return JSONResponse({"error": "Control plane not initialized"}, status_code=503)


def _worker_json(worker: WorkerDescriptor) -> dict[str, Any]:
    data = worker.model_dump(mode="json", by_alias=True)
    data["process_running"] = bool(_supervisor and _supervisor.is_running(worker.id))
    return data


def _result_response(result) -> JSONResponse:
    status = 200 if result.ok else _ERROR_STATUS.get(result.error, 500)
    return JSONResponse(result.model_dump(mode="json"), status_code=status)


def peer_entries(
    workers: list[WorkerDescriptor],
    group: str | None = None,
    exclude: str | None = None,
    host: str = "localhost",
) -> list[dict[str, Any]]:
    """Running, multi-agent-enabled workers visible to a peer in ``group``."""
    peers = []
    for w in workers:
        if w.status != WorkerStatus.RUNNING or not w.port:
            continue
        if exclude and w.id == exclude:
            continue
        multi = w.features.multi_agent(w.project_id)
        if not multi.enabled:
            continue
        if group and multi.group != group:
            continue
        peers.append({
            "id": w.id,
            "name": w.name,
            "url": f"http://{host}:{w.port}",
            "mode": multi.mode,
            "group": multi.group,
        })
    return peers


@control_app.get("/api/health")
async def health() -> dict:
    return {
        "status": "ok",
        "version": __version__,
        "uptime_s": int(time.time() - _start_time),
        "workers_running": len(_supervisor.list_processes()) if _supervisor else 0,
    }


@control_app.get("/api/workers")
async def list_workers():
    if _store is None:
        return _not_ready()
    return [_worker_json(w) for w in await _store.list_workers()]


@control_app.get("/api/workers/{worker_id}/logs")
async def worker_logs(worker_id: str, lines: int = 50):
    if _supervisor is None:
        return _not_ready()
    return _supervisor.get_output(worker_id, lines=lines)


@control_app.post("/api/workers/{worker_id}/start")
async def start_worker(worker_id: str, clean: bool = False):
    if _store is None or _supervisor is None:
        return _not_ready()
    worker = await _store.get_worker(worker_id)
    if worker is None:
        return JSONResponse({"error": "Worker not found"}, status_code=404)
    return _result_response(await _supervisor.start(worker, clean_data=clean))


@control_app.post("/api/workers/{worker_id}/stop")
async def stop_worker(worker_id: str):
    if _store is None or _supervisor is None:
        return _not_ready()
    worker = await _store.get_worker(worker_id)
    if worker is None:
        return JSONResponse({"error": "Worker not found"}, status_code=404)
    return _result_response(await _supervisor.stop(worker, StopReason.USER_STOPPED))


@control_app.post("/api/workers/{worker_id}/restart")
async def restart_worker(worker_id: str, clean: bool = False):
    if _store is None or _supervisor is None:
        return _not_ready()
    worker = await _store.get_worker(worker_id)
    if worker is None:
        return JSONResponse({"error": "Worker not found"}, status_code=404)
    return _result_response(await _supervisor.restart(worker, clean_data=clean))


@control_app.get("/api/discovery/agents")
async def discover_agents(
    group: str | None = None,
    exclude: str | None = None,
    x_agent_id: str | None = Header(default=None),
):
    """Peer discovery for workers running in multi-agent mode."""
    if _store is None:
        return _not_ready()
    workers = await _store.list_workers()
    return {"agents": peer_entries(workers, group=group, exclude=exclude or x_agent_id)}


@control_app.get("/api/events")
async def list_events(topic: str = "*", limit: int = 50) -> list[dict]:
    if _event_bus is None:
        return []
    events = _event_bus.history(topic_filter=topic, limit=limit)
    return [e.model_dump(mode="json") for e in events]
