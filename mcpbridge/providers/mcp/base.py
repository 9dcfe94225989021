"""Frames, protocol models and errors for MCP integration.

Frames are JSON-RPC 2.0 objects carried one per line. ``encode_frame`` and
``decode_frame`` are the only places that turn frames into text and back.
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, model_validator

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
DEFAULT_PROTOCOL_VERSION = "2024-11-05"


class MCPTransport(str, Enum):
    """MCP transport variants."""
    DOCKER = "docker"
    STDIO = "stdio"
    SSE = "sse"


class MCPMessageType(str, Enum):
    """MCP message types."""
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"


class MCPCapabilities(BaseModel):
    """MCP server/client capabilities."""
    model_config = ConfigDict(frozen=True, extra="allow")

    tools: Optional[Dict[str, Any]] = None
    resources: Optional[Dict[str, Any]] = None
    prompts: Optional[Dict[str, Any]] = None
    experimental: Optional[Dict[str, Any]] = None


class MCPInitializeParams(BaseModel):
    """Parameters for the initialize method."""
    protocolVersion: str = DEFAULT_PROTOCOL_VERSION
    capabilities: MCPCapabilities = Field(default_factory=MCPCapabilities)
    clientInfo: Dict[str, str] = Field(default_factory=lambda: {"name": "mcpbridge", "version": "1.0.0"})


class MCPInitializeResult(BaseModel):
    """Result from the initialize method."""
    model_config = ConfigDict(extra="allow")

    protocolVersion: str = DEFAULT_PROTOCOL_VERSION
    capabilities: MCPCapabilities = Field(default_factory=MCPCapabilities)
    serverInfo: Dict[str, Any] = Field(default_factory=dict)
    instructions: Optional[str] = None


class MCPTool(BaseModel):
    """MCP tool definition as advertised by tools/list."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = Field(default=None, alias="inputSchema")


class MCPToolsListResult(BaseModel):
    """Result from the tools/list method."""
    model_config = ConfigDict(extra="allow")

    tools: List[MCPTool] = Field(default_factory=list)
    nextCursor: Optional[str] = None


class MCPToolCallResult(BaseModel):
    """Result from the tools/call method."""
    model_config = ConfigDict(extra="allow")

    content: List[Dict[str, Any]] = Field(default_factory=list)
    isError: Optional[bool] = None


class MCPMessage(BaseModel):
    """A single JSON-RPC frame.

    A frame is a request (``id`` and ``method``), a notification (``method``
    only) or a response (``id`` and exactly one of ``result``/``error``).
    ``result`` presence is tracked through ``model_fields_set`` so that a
    JSON ``null`` result still counts as a result.
    """
    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = JSONRPC_VERSION
    id: Optional[StrictInt] = None
    method: Optional[str] = None
    params: Optional[Union[Dict[str, Any], List[Any]]] = None
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def has_result(self) -> bool:
        if "result" not in self.model_fields_set:
            return False
        # Some servers send "result": null next to a real error
        return not (self.error is not None and self.result is None)

    @property
    def message_type(self) -> MCPMessageType:
        if self.method is None:
            return MCPMessageType.RESPONSE
        if self.id is None:
            return MCPMessageType.NOTIFICATION
        return MCPMessageType.REQUEST

    @model_validator(mode="after")
    def _check_shape(self) -> "MCPMessage":
        has_error = self.error is not None
        if self.method is None:
            if self.id is None:
                raise ValueError("frame has neither 'id' nor 'method'")
            if self.has_result == has_error:
                raise ValueError("response must carry exactly one of 'result' or 'error'")
        elif self.has_result or has_error:
            raise ValueError("request or notification must not carry 'result' or 'error'")
        return self


class MCPRequest(MCPMessage):
    """MCP request message."""
    id: StrictInt
    method: str


class MCPResponse(MCPMessage):
    """MCP response message."""
    id: StrictInt


class MCPNotification(MCPMessage):
    """MCP notification message."""
    id: None = None
    method: str


class MCPError(Exception):
    """Base MCP error."""

    def __init__(self, message: str, code: int = -1, data: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data

    @classmethod
    def from_response_error(cls, error: Dict[str, Any]) -> "MCPError":
        """Build an error from the ``error`` member of a response frame."""
        code = error.get("code", -1)
        return cls(
            str(error.get("message", "Unknown error")),
            code=code if isinstance(code, int) else -1,
            data=error.get("data"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary format for MCP messages."""
        result = {
            "code": self.code,
            "message": self.message
        }
        if self.data is not None:
            result["data"] = self.data
        return result


class MCPToolNotFoundError(MCPError):
    """Tool not found error."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool '{tool_name}' not found", code=-32601)
        self.tool_name = tool_name


class MCPConnectionError(MCPError):
    """Connection error."""

    def __init__(self, message: str):
        super().__init__(f"Connection error: {message}", code=-32003)
        self.reason = message


class MCPEnvironmentDeadError(MCPConnectionError):
    """The process or container hosting the server is no longer running."""


class MCPMalformedFrameError(MCPError):
    """A line could not be decoded into a valid frame."""

    def __init__(self, message: str, line: Optional[str] = None):
        super().__init__(f"Malformed frame: {message}", code=-32700)
        self.line = line


class MCPDuplicateRequestIdError(MCPError):
    """A request id was registered while another request with it is pending."""

    def __init__(self, request_id: int):
        super().__init__(f"Request id {request_id} is already pending", code=-32600)
        self.request_id = request_id


class MCPRequestTimeoutError(MCPError):
    """No correlated response arrived in time."""

    def __init__(self, method: str, timeout: float, request_id: Optional[int] = None):
        super().__init__(f"Request '{method}' timed out after {timeout} seconds", code=-32001)
        self.method = method
        self.timeout = timeout
        self.request_id = request_id


class MCPStartTimeoutError(MCPError):
    """The environment did not report itself running within the bound."""

    def __init__(self, message: str):
        super().__init__(message, code=-32002)


class MCPStartFailureError(MCPError):
    """The environment could not be created or stopped while starting."""

    def __init__(self, message: str):
        super().__init__(message, code=-32002)


def encode_frame(message: MCPMessage) -> str:
    """Serialize a frame to a single newline-terminated line."""
    data = {
        key: value
        for key, value in message.model_dump().items()
        if value is not None or (key == "result" and message.has_result)
    }
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False) + "\n"


def decode_frame(line: Union[str, bytes]) -> MCPMessage:
    """Parse one line into the most specific frame class.

    Raises:
        MCPMalformedFrameError: If the line is not JSON or not a valid frame
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    text = line.strip()
    if not text:
        raise MCPMalformedFrameError("empty line", line=line)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MCPMalformedFrameError(f"invalid JSON ({e.msg})", line=text) from e

    if not isinstance(data, dict):
        raise MCPMalformedFrameError(f"expected a JSON object, got {type(data).__name__}", line=text)

    frame_class: type[MCPMessage]
    if data.get("method") is None:
        frame_class = MCPResponse
    elif data.get("id") is None:
        frame_class = MCPNotification
    else:
        frame_class = MCPRequest

    try:
        return frame_class.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "frame"
        raise MCPMalformedFrameError(f"{location}: {first['msg']}", line=text) from e
