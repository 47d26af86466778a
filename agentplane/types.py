"""Core types shared across all agentplane subsystems."""

from __future__ import annotations

import secrets
import uuid
from enum import Enum


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def new_api_key() -> str:
    """Per-worker credential presented as X-API-Key on calls into the worker."""
    return f"agt_{secrets.token_hex(24)}"


# ── Worker States ─────────────────────────────────────────────────────────────


class WorkerStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class StopReason(str, Enum):
    USER_STOPPED = "user_stopped"
    EXITED = "exited"
    CRASHED = "crashed"
    PROVIDER_CHANGED = "provider_changed"
    RESTART = "restart"
    DELETED = "deleted"
    BOOT_RESET = "boot_reset"


# ── Resource classes for port allocation ─────────────────────────────────────


class ResourceClass(str, Enum):
    AGENT = "agent"
    MCP = "mcp"


# ── Tool handler strategies ──────────────────────────────────────────────────


class HandlerType(str, Enum):
    MOCK = "mock"
    HTTP = "http"
    JAVASCRIPT = "javascript"
