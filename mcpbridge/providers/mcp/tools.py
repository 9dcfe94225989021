"""Publishing MCP tools to LLM tool-calling loops.

Every tool is published as a ``(ToolSpecification, ToolExecutor)`` pair.
The specification is what the model sees; the executor runs the call the
model asked for and returns text for the next turn.
"""

import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, Type, Union

from pydantic import BaseModel, Field

from mcpbridge.core.models import StrictBaseModel
from mcpbridge.utils.schema import model_to_tool_schema, to_json_schema

from .base import MCPToolCallResult, MCPToolNotFoundError, MCPToolsListResult
from .transport import BaseMCPTransport

logger = logging.getLogger(__name__)

TOOL_ERROR_PREFIX = "There was an error executing the tool. The tool returned: "
EMPTY_PARAMETERS: Dict[str, Any] = {"type": "object", "properties": {}}

Arguments = Union[str, Mapping[str, Any], None]


class ToolSpecification(StrictBaseModel):
    """A tool as presented to the model."""

    name: str = Field(..., min_length=1, description="Tool name the model calls")
    description: str = Field(default="", description="What the tool does")
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: dict(EMPTY_PARAMETERS),
        description="JSON schema of the tool arguments",
    )


class ToolExecutor(Protocol):
    """Runs one tool call and returns its textual result."""

    async def execute(self, name: str, arguments: Arguments) -> str:
        ...


ToolPair = Tuple[ToolSpecification, ToolExecutor]


def parse_arguments(arguments: Arguments) -> Dict[str, Any]:
    """Normalize model-supplied arguments to a dict.

    Raises:
        ValueError: If the arguments are not a JSON object
    """
    if arguments is None:
        return {}
    if isinstance(arguments, Mapping):
        return dict(arguments)
    if not arguments.strip():
        return {}

    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ValueError(f"Tool arguments are not valid JSON: {e.msg}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"Tool arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


def extract_text(result: Any) -> str:
    """Flatten a tools/call result into the text handed back to the model."""
    if not isinstance(result, dict):
        return "" if result is None else json.dumps(result, separators=(",", ":"))

    call_result = MCPToolCallResult.model_validate(result)
    parts = []
    for block in call_result.content:
        if block.get("type") == "text":
            parts.append(str(block.get("text", "")))
        else:
            parts.append(json.dumps(block, separators=(",", ":")))
    text = "\n".join(parts)

    if call_result.isError:
        return f"{TOOL_ERROR_PREFIX}{text}"
    return text


class MCPToolExecutor:
    """Forwards tool calls to an MCP server through its transport."""

    def __init__(self, transport: BaseMCPTransport):
        self.transport = transport

    async def execute(self, name: str, arguments: Arguments) -> str:
        params = {"name": name, "arguments": parse_arguments(arguments)}
        result = await self.transport.send_request("tools/call", params)
        logger.debug(f"MCP tool '{name}' called successfully")
        return extract_text(result)


class FunctionToolExecutor:
    """Runs a local Python callable as a tool.

    Arguments are validated with ``parameters_model`` and the handler
    receives the validated model instance.
    """

    def __init__(
        self,
        name: str,
        parameters_model: Type[BaseModel],
        handler: Callable[[Any], Union[Any, Awaitable[Any]]],
    ):
        self.name = name
        self.parameters_model = parameters_model
        self.handler = handler

    async def execute(self, name: str, arguments: Arguments) -> str:
        if name != self.name:
            raise MCPToolNotFoundError(name)
        params = self.parameters_model.model_validate(parse_arguments(arguments))
        result = self.handler(params)
        if inspect.isawaitable(result):
            result = await result
        return str(result)


async def build_tools(transport: BaseMCPTransport) -> List[ToolPair]:
    """List the tools of an initialized MCP connection.

    Follows ``nextCursor`` until the server stops paginating. The schemas
    the server advertises are published unchanged.

    Args:
        transport: Started and initialized transport

    Returns:
        One ``(specification, executor)`` pair per distinct tool name
    """
    executor = MCPToolExecutor(transport)
    tools: List[ToolPair] = []
    seen: Dict[str, ToolSpecification] = {}
    cursors_seen = set()
    cursor: Optional[str] = None

    while True:
        params = {"cursor": cursor} if cursor else None
        page = MCPToolsListResult.model_validate(await transport.send_request("tools/list", params) or {})

        for tool in page.tools:
            if tool.name in seen:
                logger.warning(f"Server advertised tool '{tool.name}' more than once, keeping the first")
                continue
            spec = ToolSpecification(
                name=tool.name,
                description=tool.description or "",
                parameters=tool.input_schema or dict(EMPTY_PARAMETERS),
            )
            seen[tool.name] = spec
            tools.append((spec, executor))

        cursor = page.nextCursor
        if not cursor:
            break
        if cursor in cursors_seen:
            logger.warning(f"Server repeated tools/list cursor '{cursor}', stopping pagination")
            break
        cursors_seen.add(cursor)

    logger.info(f"Discovered {len(tools)} MCP tool(s)")
    return tools


def tool_from_model(
    name: str,
    description: str,
    parameters_model: Type[BaseModel],
    handler: Callable[[Any], Union[Any, Awaitable[Any]]],
) -> ToolPair:
    """Publish a Python callable as a tool whose arguments are ``parameters_model``."""
    schema = to_json_schema(model_to_tool_schema(parameters_model))
    # The tool description is carried by the specification itself
    schema.pop("description", None)
    spec = ToolSpecification(name=name, description=description, parameters=schema)
    return spec, FunctionToolExecutor(name, parameters_model, handler)


async def collect_tools(providers: Iterable[Any]) -> List[ToolPair]:
    """Merge the tools published by several providers.

    Providers exposing ``initialize`` are initialized first. When two
    providers publish the same tool name the later one wins.
    """
    merged: Dict[str, ToolPair] = {}
    for tool_provider in providers:
        initialize = getattr(tool_provider, "initialize", None)
        if initialize is not None:
            await initialize()

        provider_name = getattr(tool_provider, "name", type(tool_provider).__name__)
        for spec, executor in tool_provider.get_tools():
            if spec.name in merged:
                logger.warning(f"Tool '{spec.name}' from provider '{provider_name}' replaces an earlier tool")
            merged[spec.name] = (spec, executor)

    return list(merged.values())
