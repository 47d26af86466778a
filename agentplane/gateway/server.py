"""Tool Gateway: JSON-RPC 2.0 tool server for ``local`` tool servers.

Adds one route pair to the control app:
  POST    /api/mcp/servers/{server_id}/mcp   JSON-RPC endpoint
  OPTIONS /api/mcp/servers/{server_id}/mcp   CORS preflight

Protocol errors (bad JSON, unknown server, unknown method) come back as
JSON-RPC errors. Tool failures come back as successful results carrying
``isError: true``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import orjson
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from agentplane.config import AgentplaneSettings
from agentplane.exceptions import InvalidParamsError
from agentplane.gateway.handlers import ToolHandler, default_handlers
from agentplane.gateway.models import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROTOCOL_VERSION,
    SERVER_VERSION,
    JsonRpcRequest,
    JsonRpcResponse,
    ToolCallResult,
)
from agentplane.gateway.templates import TemplateEngine
from agentplane.sandbox.executor import SandboxConfig, ScriptSandbox
from agentplane.store.base import ToolStore
from agentplane.store.models import ToolDefinition, ToolServer
from agentplane.types import HandlerType

_logger = logging.getLogger(__name__)

router = APIRouter()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Mcp-Session-Id",
}


class ToolGateway:
    """Dispatches JSON-RPC requests for one tool store."""

    def __init__(
        self,
        store: ToolStore,
        handlers: dict[HandlerType, ToolHandler],
        call_timeout: float = 30.0,
    ) -> None:
        self._store = store
        self._handlers = handlers
        self._call_timeout = call_timeout
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, store: ToolStore, cfg: AgentplaneSettings) -> ToolGateway:
        templates = TemplateEngine(strict=cfg.template_strict)
        sandbox = ScriptSandbox(SandboxConfig(
            node_binary=cfg.node_binary,
            memory_limit_mb=cfg.sandbox_memory_limit_mb,
            cpu_time_limit_s=cfg.sandbox_cpu_time_limit_s,
            timeout_s=float(cfg.sandbox_cpu_time_limit_s),
        ))
        handlers = default_handlers(
            templates,
            sandbox,
            http_timeout=cfg.http_tool_timeout_s,
            denylist_enabled=cfg.script_denylist_enabled,
        )
        return cls(store, handlers, call_timeout=cfg.tool_call_timeout_s)

    @property
    def pending(self) -> int:
        """Handler runs still going, including ones whose caller timed out."""
        return len(self._background)

    async def handle_request(self, server_id: str, body: bytes) -> JsonRpcResponse:
        """Handle one raw HTTP body addressed to ``server_id``."""
        try:
            server = await self._store.get_server(server_id)
        except Exception:
            _logger.exception("Could not look up server %s", server_id)
            return JsonRpcResponse.err(None, INTERNAL_ERROR, "Internal error")
        if server is None or server.type != "local":
            return JsonRpcResponse.err(
                None, INVALID_REQUEST, "Server not found or not a local server",
            )

        try:
            payload = orjson.loads(body)
        except orjson.JSONDecodeError:
            return JsonRpcResponse.err(None, PARSE_ERROR, "Parse error")

        if isinstance(payload, dict) and payload.get("params") is None:
            payload.pop("params", None)
        try:
            request = JsonRpcRequest.model_validate(payload)
        except ValidationError:
            request_id = payload.get("id") if isinstance(payload, dict) else None
            if not isinstance(request_id, (int, str)):
                request_id = None
            return JsonRpcResponse.err(request_id, INVALID_REQUEST, "Invalid Request")

        return await self.handle_rpc(server, request)

    async def handle_rpc(self, server: ToolServer, request: JsonRpcRequest) -> JsonRpcResponse:
        """Dispatch a JSON-RPC request to the right method."""
        methods = {
            "initialize": self._initialize,
            "notifications/initialized": self._initialized,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
        }

        method = methods.get(request.method)
        if not method:
            return JsonRpcResponse.err(
                request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}",
            )

        try:
            result = await method(server, request.params)
            return JsonRpcResponse.success(request.id, result)
        except InvalidParamsError as e:
            return JsonRpcResponse.err(request.id, INVALID_PARAMS, str(e))
        except Exception as e:
            _logger.exception("Gateway RPC error: %s", e)
            return JsonRpcResponse.err(request.id, INTERNAL_ERROR, "Internal error")

    async def _initialize(self, server: ToolServer, params: dict) -> dict:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": server.name, "version": SERVER_VERSION},
        }

    async def _initialized(self, server: ToolServer, params: dict) -> dict:
        return {}

    async def _tools_list(self, server: ToolServer, params: dict) -> dict:
        tools = await self._store.list_tools(server.id)
        return {"tools": [t.listing() for t in tools if t.enabled]}

    async def _tools_call(self, server: ToolServer, params: dict) -> dict:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidParamsError("Missing tool name")
        args = params.get("arguments") or {}
        if not isinstance(args, dict):
            raise InvalidParamsError("Tool arguments must be an object")

        tool = await self._store.find_tool(server.id, name)
        if tool is None:
            return ToolCallResult.error(f"Tool '{name}' not found").to_wire()
        if not tool.enabled:
            return ToolCallResult.error(f"Tool '{name}' is disabled").to_wire()

        result = await self.call_tool(tool, args, dict(server.env))
        return result.to_wire()

    async def call_tool(
        self, tool: ToolDefinition, args: dict[str, Any], credentials: dict[str, str],
    ) -> ToolCallResult:
        """Run a tool's handler with the per-call timeout.

        A run that outlives the timeout keeps going in the background and its
        result is dropped.
        """
        task = asyncio.create_task(self._run_handler(tool, args, credentials))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._call_timeout)
        except asyncio.TimeoutError:
            _logger.warning("Tool %s timed out after %ss", tool.name, self._call_timeout)
            return ToolCallResult.error(
                f"Tool '{tool.name}' timed out after {self._call_timeout:g}s"
            )

    async def _run_handler(
        self, tool: ToolDefinition, args: dict[str, Any], credentials: dict[str, str],
    ) -> ToolCallResult:
        handler = self._handlers.get(tool.handler_type, self._handlers[HandlerType.MOCK])
        try:
            return await handler(tool, args, credentials)
        except Exception as e:
            _logger.exception("Tool %s failed", tool.name)
            return ToolCallResult.error(f"Error: {e}")

    async def drain(self) -> None:
        """Wait for background handler runs to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


_gateway: ToolGateway | None = None


def set_gateway(gateway: ToolGateway | None) -> None:
    global _gateway
    _gateway = gateway


# ── Routes ────────────────────────────────────────────────────


@router.options("/api/mcp/servers/{server_id}/mcp")
async def mcp_preflight(server_id: str) -> Response:
    return Response(headers=CORS_HEADERS)


@router.post("/api/mcp/servers/{server_id}/mcp")
async def mcp_rpc(server_id: str, request: Request) -> JSONResponse:
    """JSON-RPC 2.0 endpoint for one tool server."""
    if _gateway is None:
        return JSONResponse(
            JsonRpcResponse.err(None, INTERNAL_ERROR, "Tool gateway not initialized").to_wire(),
            status_code=503,
            headers=CORS_HEADERS,
        )
    body = await request.body()
    resp = await _gateway.handle_request(server_id, body)
    return JSONResponse(resp.to_wire(), headers=CORS_HEADERS)
