"""Custom exception hierarchy for agentplane."""

from __future__ import annotations

from enum import Enum


class AgentplaneError(Exception):
    """Base for all agentplane errors."""


class StoreError(AgentplaneError):
    """The backing store could not satisfy a request."""


class WorkerNotFoundError(StoreError):
    """No worker with the given ID exists."""


class SupervisorErrorCode(str, Enum):
    ALREADY_RUNNING = "already_running"
    ALREADY_STARTING = "already_starting"
    NO_PORT_ASSIGNED = "no_port_assigned"
    PORT_IN_USE = "port_in_use"
    HEALTH_CHECK_TIMEOUT = "health_check_timeout"
    BINARY_UNAVAILABLE = "binary_unavailable"
    UNKNOWN_PROVIDER = "unknown_provider"
    MISSING_PROVIDER_KEY = "missing_provider_key"
    SPAWN_FAILED = "spawn_failed"
    INTERNAL = "internal"


class SupervisorError(AgentplaneError):
    """A worker lifecycle operation failed.

    Raised inside the supervisor and converted to a result object at its
    public boundary.
    """

    def __init__(self, code: SupervisorErrorCode, message: str = "") -> None:
        super().__init__(message or code.value)
        self.code = code
        self.message = message or code.value


class TemplateError(AgentplaneError):
    """A tool template could not be rendered."""


class SandboxError(AgentplaneError):
    """The script sandbox failed to run a tool."""


class InvalidParamsError(AgentplaneError):
    """A JSON-RPC call carried parameters the method cannot use."""
