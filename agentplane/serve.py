"""agentplane server: control API, tool gateway and worker supervisor together."""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from agentplane.app import configure, control_app
from agentplane.config import AgentplaneSettings, settings
from agentplane.events.bus import EventBus
from agentplane.gateway.server import ToolGateway, set_gateway
from agentplane.store.ports import PortAllocator
from agentplane.store.secrets import SecretBox
from agentplane.store.sqlite import SqliteStore
from agentplane.supervisor.supervisor import ProcessSupervisor
from agentplane.types import ResourceClass

_logger = logging.getLogger(__name__)


async def open_store(cfg: AgentplaneSettings) -> SqliteStore:
    cfg.data_dir.mkdir(parents=True, exist_ok=True)
    db_path = str(cfg.database_path)
    ports = PortAllocator(db_path, {
        ResourceClass.AGENT: cfg.agent_base_port,
        ResourceClass.MCP: cfg.mcp_base_port,
    })
    store = SqliteStore(db_path, SecretBox.from_data_dir(cfg.data_dir), ports)
    await store.initialize()
    return store


async def main(cfg: AgentplaneSettings = settings) -> None:
    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    event_bus = EventBus()
    store = await open_store(cfg)
    supervisor = ProcessSupervisor.from_settings(store, cfg, event_bus=event_bus)
    gateway = ToolGateway.from_settings(store, cfg)

    set_gateway(gateway)
    configure(store=store, supervisor=supervisor, event_bus=event_bus)

    # Workers that were running when we last exited come back up.
    resume_task = asyncio.create_task(supervisor.resume_running())

    config = uvicorn.Config(
        control_app,
        host=cfg.host,
        port=cfg.port,
        log_level="warning",
    )
    server = uvicorn.Server(config)
    _logger.info("agentplane listening on %s:%d", cfg.host, cfg.port)
    try:
        await server.serve()
    finally:
        # Cleanup on shutdown
        resume_task.cancel()
        await supervisor.shutdown()
        await gateway.drain()
        await store.close()
        set_gateway(None)
        configure()


if __name__ == "__main__":
    asyncio.run(main())
