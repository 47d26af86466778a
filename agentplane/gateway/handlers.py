"""Tool handler strategies: mock, http and javascript.

Every handler returns a ToolCallResult. Handler failures become tool errors
(``isError: true``) and never escape as exceptions.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

import httpx
import orjson

from agentplane.exceptions import SandboxError, TemplateError
from agentplane.gateway.models import ToolCallResult
from agentplane.gateway.templates import TemplateEngine, stringify
from agentplane.sandbox.executor import ScriptSandbox
from agentplane.store.models import ToolDefinition
from agentplane.types import HandlerType

_logger = logging.getLogger(__name__)

# Not a security boundary (the sandbox process is); kept so tools that were
# rejected before are still rejected.
SCRIPT_DENYLIST = re.compile(
    r"\b(process|require|import|Bun|Deno|eval|Function|child_process|exec|spawn)\b"
)

_BODY_METHODS = {"POST", "PUT", "PATCH"}


def pretty(value: Any) -> str:
    return orjson.dumps(value, option=orjson.OPT_INDENT_2).decode()


class ToolHandler(Protocol):
    async def __call__(
        self, tool: ToolDefinition, args: dict[str, Any], credentials: dict[str, str],
    ) -> ToolCallResult: ...


class MockHandler:
    """Renders the stored response template against the call arguments."""

    def __init__(self, templates: TemplateEngine) -> None:
        self._templates = templates

    async def __call__(
        self, tool: ToolDefinition, args: dict[str, Any], credentials: dict[str, str],
    ) -> ToolCallResult:
        template = tool.mock_response if tool.mock_response is not None else {}
        try:
            rendered = self._templates.render(template, args)
            return ToolCallResult.text(pretty(rendered))
        except (TemplateError, TypeError) as e:
            return ToolCallResult.error(str(e))


class HttpHandler:
    """Proxies the call to an upstream HTTP API described by ``http_config``."""

    def __init__(self, templates: TemplateEngine, timeout: float = 30.0) -> None:
        self._templates = templates
        self._timeout = timeout

    async def __call__(
        self, tool: ToolDefinition, args: dict[str, Any], credentials: dict[str, str],
    ) -> ToolCallResult:
        config = tool.http_config
        if config is None or not config.url:
            return ToolCallResult.error("Error: No HTTP config or URL defined")

        method = (config.method or "GET").upper()
        try:
            url = stringify(self._templates.render(config.url, args))
            rendered_headers = self._templates.render(config.headers, args, credentials)
            headers = {"Content-Type": "application/json"}
            for key, value in rendered_headers.items():
                headers[key] = stringify(value)

            content = None
            if method in _BODY_METHODS:
                payload = self._templates.render(config.body, args) if config.body else args
                content = orjson.dumps(payload)
        except TemplateError as e:
            return ToolCallResult.error(str(e))

        try:
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                resp = await client.request(method, url, headers=headers, content=content)
        except httpx.HTTPError as e:
            _logger.warning("HTTP tool %s failed: %s", tool.name, e)
            return ToolCallResult.error(f"HTTP error: {e}")

        try:
            data: Any = orjson.loads(resp.content)
        except orjson.JSONDecodeError:
            data = resp.text
        text = data if isinstance(data, str) else pretty(data)

        if not resp.is_success:
            return ToolCallResult.error(f"HTTP {resp.status_code}: {text}")
        return ToolCallResult.text(text)


class JavascriptHandler:
    """Runs the tool's code in the script sandbox."""

    def __init__(self, sandbox: ScriptSandbox, denylist_enabled: bool = True) -> None:
        self._sandbox = sandbox
        self._denylist_enabled = denylist_enabled

    async def __call__(
        self, tool: ToolDefinition, args: dict[str, Any], credentials: dict[str, str],
    ) -> ToolCallResult:
        if not tool.code:
            return ToolCallResult.error("Error: No code defined for this tool")

        if self._denylist_enabled and SCRIPT_DENYLIST.search(tool.code):
            return ToolCallResult.error(
                "Error: Tool code contains disallowed keywords "
                "(process, require, import, eval, exec, spawn)"
            )

        try:
            outcome = await self._sandbox.run(tool.code, args, credentials)
        except SandboxError as e:
            return ToolCallResult.error(f"JavaScript error: {e}")

        if not outcome.success:
            return ToolCallResult.error(f"JavaScript error: {outcome.error}")
        result = outcome.result
        return ToolCallResult.text(result if isinstance(result, str) else pretty(result))


def default_handlers(
    templates: TemplateEngine,
    sandbox: ScriptSandbox,
    http_timeout: float = 30.0,
    denylist_enabled: bool = True,
) -> dict[HandlerType, ToolHandler]:
    return {
        HandlerType.MOCK: MockHandler(templates),
        HandlerType.HTTP: HttpHandler(templates, timeout=http_timeout),
        HandlerType.JAVASCRIPT: JavascriptHandler(sandbox, denylist_enabled=denylist_enabled),
    }
