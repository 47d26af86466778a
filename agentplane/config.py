"""Global configuration: loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class AgentplaneSettings(BaseSettings):
    data_dir: Path = Path.home() / ".agentplane"
    db_path: Path | None = None  # defaults to {data_dir}/agentplane.db
    log_level: str = "INFO"

    # Control server (gateway + worker lifecycle API)
    host: str = "0.0.0.0"
    port: int = 4280
    public_url: str = ""  # base URL workers use to reach us; defaults to http://localhost:{port}

    # Worker processes
    worker_binary: str = "agent"
    worker_host: str = "127.0.0.1"
    agent_base_port: int = 4100
    mcp_base_port: int = 4200

    # Supervisor timings (seconds)
    health_max_attempts: int = 30
    health_delay_s: float = 0.2
    health_request_timeout_s: float = 1.0
    shutdown_timeout_s: float = 2.0
    config_push_timeout_s: float = 5.0

    # Tool gateway
    tool_call_timeout_s: float = 30.0
    http_tool_timeout_s: float = 30.0
    template_strict: bool = False  # raise on unknown template expressions instead of echoing them
    script_denylist_enabled: bool = True

    # Script sandbox
    node_binary: str = "node"
    sandbox_memory_limit_mb: int = 128
    sandbox_cpu_time_limit_s: int = 5

    model_config = {"env_prefix": "AGENTPLANE_"}

    @property
    def database_path(self) -> Path:
        return self.db_path or self.data_dir / "agentplane.db"

    @property
    def agents_dir(self) -> Path:
        return self.data_dir / "agents"

    @property
    def base_url(self) -> str:
        return (self.public_url or f"http://localhost:{self.port}").rstrip("/")


settings = AgentplaneSettings()
