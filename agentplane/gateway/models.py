"""Gateway data models: JSON-RPC 2.0 envelopes and tool call results."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

PROTOCOL_VERSION = "2024-11-05"
SERVER_VERSION = "1.0.0"

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class JsonRpcRequest(BaseModel):
    """JSON-RPC 2.0 request."""

    jsonrpc: str = "2.0"
    id: int | str | None = None
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class JsonRpcResponse(BaseModel):
    """JSON-RPC 2.0 response. Exactly one of ``result`` / ``error`` is sent."""

    jsonrpc: str = "2.0"
    id: int | str | None = None
    result: Any = None
    error: dict[str, Any] | None = None

    @classmethod
    def success(cls, id: int | str | None, result: Any) -> JsonRpcResponse:
        return cls(id=id, result=result)

    @classmethod
    def err(cls, id: int | str | None, code: int, message: str) -> JsonRpcResponse:
        return cls(id=id, error={"code": code, "message": message})

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            body["error"] = self.error
        else:
            body["result"] = self.result
        return body


class TextContent(BaseModel):
    type: str = "text"
    text: str


class ToolCallResult(BaseModel):
    """What ``tools/call`` returns. ``is_error`` marks a tool failure, not a protocol one."""

    content: list[TextContent] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")

    model_config = {"populate_by_name": True}

    @classmethod
    def text(cls, text: str) -> ToolCallResult:
        return cls(content=[TextContent(text=text)])

    @classmethod
    def error(cls, text: str) -> ToolCallResult:
        return cls(content=[TextContent(text=text)], is_error=True)

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {"content": [c.model_dump() for c in self.content]}
        if self.is_error:
            body["isError"] = True
        return body
