"""MCP Client Provider implementation."""

import logging
from typing import Any, Dict, List, Optional

from pydantic import Field, model_validator

from mcpbridge.providers.core.base import Provider, ProviderSettings
from mcpbridge.providers.core.decorators import provider

from ..base import (
    DEFAULT_PROTOCOL_VERSION,
    MCPEnvironmentDeadError,
    MCPInitializeParams,
    MCPInitializeResult,
    MCPMessage,
    MCPToolNotFoundError,
    MCPTransport,
)
from ..tools import Arguments, ToolPair, ToolSpecification, build_tools
from ..transport import BaseMCPTransport, create_transport

logger = logging.getLogger(__name__)


class MCPClientSettings(ProviderSettings):
    """Settings for MCP client provider."""

    transport: MCPTransport = Field(
        default=MCPTransport.DOCKER, strict=False, description="MCP transport type: DOCKER, STDIO or SSE"
    )
    timeout: Optional[float] = Field(None, description="Start/connect timeout in seconds, defaults to the bridge setting")
    request_timeout: Optional[float] = Field(None, description="Per-request timeout, defaults to the bridge setting")
    log_events: Optional[bool] = Field(None, description="Log frame traffic, defaults to the bridge setting")

    # stdio
    server_command: Optional[str] = Field(None, description="Command to start server (for stdio)")
    server_args: List[str] = Field(default_factory=list, description="Arguments for server command")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment for the server process")

    # docker
    image: Optional[str] = Field(None, description="Image to run the server from (for docker)")
    command: List[str] = Field(default_factory=list, description="Container command-line arguments")
    environment: Dict[str, str] = Field(default_factory=dict, description="Container environment variables")
    docker_host: Optional[str] = Field(None, description="Docker engine URL")
    docker_config: Optional[str] = Field(None, description="Directory holding the docker config.json")
    docker_context: Optional[str] = Field(None, description="Named docker context")
    docker_cert_path: Optional[str] = Field(None, description="Directory with TLS client certificates")
    docker_tls_verify: bool = Field(False, description="Verify the engine's TLS certificate")
    registry_email: Optional[str] = Field(None, description="Registry account email")
    registry_username: Optional[str] = Field(None, description="Registry user name")
    registry_password: Optional[str] = Field(None, repr=False, description="Registry password")
    registry_url: Optional[str] = Field(None, description="Registry URL")
    api_version: Optional[str] = Field(None, description="Docker engine API version")

    # sse
    sse_url: Optional[str] = Field(None, description="Event stream URL (for sse)")
    auth_token: Optional[str] = Field(None, repr=False, description="Bearer token (for sse)")
    headers: Dict[str, str] = Field(default_factory=dict, description="Additional headers")

    client_name: str = Field("mcpbridge", description="Client name sent in the handshake")
    client_version: str = Field("1.0.0", description="Client version sent in the handshake")
    protocol_version: str = Field(DEFAULT_PROTOCOL_VERSION, description="Requested MCP protocol version")

    @model_validator(mode="after")
    def _check_transport_fields(self) -> "MCPClientSettings":
        required = {
            MCPTransport.DOCKER: "image",
            MCPTransport.STDIO: "server_command",
            MCPTransport.SSE: "sse_url",
        }[self.transport]
        if not getattr(self, required):
            raise ValueError(f"'{required}' is required for the {self.transport.value} transport")
        return self


@provider(provider_type="mcp_client", name="mcp-client", settings_class=MCPClientSettings)
class MCPClientProvider(Provider[MCPClientSettings]):
    """Provider that connects to one MCP server and publishes its tools."""

    def __init__(
        self,
        name: str = "mcp-client",
        provider_type: str = "mcp_client",
        settings: MCPClientSettings | None = None,
    ):
        super().__init__(name=name, provider_type=provider_type, settings=settings)
        self._transport: BaseMCPTransport | None = None
        self._server_info: MCPInitializeResult | None = None
        self._tools: dict[str, ToolPair] = {}

    @property
    def transport(self) -> BaseMCPTransport | None:
        return self._transport

    @property
    def server_info(self) -> MCPInitializeResult | None:
        """Handshake result of the connected server."""
        return self._server_info

    async def _initialize(self) -> None:
        transport = create_transport(self.settings)
        try:
            await transport.start(self._handle_server_message)
            self._server_info = await transport.initialize(
                MCPInitializeParams(
                    protocolVersion=self.settings.protocol_version,
                    clientInfo={"name": self.settings.client_name, "version": self.settings.client_version},
                )
            )
            tools = await build_tools(transport)
        except Exception:
            await self._close_transport(transport)
            self._server_info = None
            raise

        transport.on_failure(self._handle_failure)
        self._transport = transport
        self._tools = {spec.name: (spec, executor) for spec, executor in tools}
        logger.info(
            f"MCP client '{self.name}' connected over {self.settings.transport.value} "
            f"with {len(self._tools)} tool(s)"
        )

    async def _shutdown(self) -> None:
        transport, self._transport = self._transport, None
        self._tools = {}
        self._server_info = None
        if transport is not None:
            await self._close_transport(transport)

    async def _close_transport(self, transport: BaseMCPTransport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.warning(f"Unable to close the MCP client '{self.name}': {e}")

    def _handle_server_message(self, message: MCPMessage) -> None:
        logger.debug(f"MCP client '{self.name}' ignoring server {message.message_type.value} '{message.method}'")

    def _handle_failure(self, error: MCPEnvironmentDeadError) -> None:
        logger.error(f"MCP client '{self.name}' lost its server: {error.message}")

    def _require_connected(self, operation: str) -> None:
        if not self._initialized or self._transport is None:
            raise self._error("MCP client not connected", operation)

    def get_tools(self) -> List[ToolPair]:
        """Published ``(specification, executor)`` pairs."""
        self._require_connected("get_tools")
        return list(self._tools.values())

    def list_tools(self) -> List[str]:
        self._require_connected("list_tools")
        return list(self._tools)

    def get_tool_specification(self, tool_name: str) -> ToolSpecification:
        self._require_connected("get_tool_specification")
        if tool_name not in self._tools:
            raise MCPToolNotFoundError(tool_name)
        return self._tools[tool_name][0]

    async def call_tool(self, tool_name: str, arguments: Arguments = None) -> str:
        """Call a tool on the MCP server.

        Args:
            tool_name: Name of a published tool
            arguments: JSON string or dict of arguments

        Returns:
            Text result for the model

        Raises:
            ProviderError: If the client is not connected
            MCPToolNotFoundError: If the server does not publish ``tool_name``
        """
        self._require_connected("call_tool")
        if tool_name not in self._tools:
            raise MCPToolNotFoundError(tool_name)

        _, executor = self._tools[tool_name]
        try:
            return await executor.execute(tool_name, arguments)
        except Exception as e:
            logger.error(f"Error calling MCP tool '{tool_name}': {e}")
            raise

    async def check_connection(self) -> bool:
        """Check that the server is alive. Never raises."""
        if not self._initialized or self._transport is None:
            return False
        try:
            await self._transport.check_health()
        except Exception as e:
            logger.warning(f"MCP client '{self.name}' health check failed: {e}")
            return False
        return True

    async def get_server_info(self) -> Dict[str, Any]:
        """Get information about the connected server."""
        connected = await self.check_connection()
        if not connected or self._server_info is None:
            return {"connected": False}

        return {
            "connected": True,
            "transport": self.settings.transport.value,
            "server": self._server_info.serverInfo,
            "protocol_version": self._server_info.protocolVersion,
            "tools_count": len(self._tools),
            "available_tools": list(self._tools),
        }


async def create_mcp_client(
    name: str, transport: MCPTransport = MCPTransport.DOCKER, **kwargs: Any
) -> MCPClientProvider:
    """Create and initialize an MCP client provider."""
    settings = MCPClientSettings(transport=transport, **kwargs)

    client = MCPClientProvider(name=name, provider_type="mcp_client", settings=settings)
    await client.initialize()
    return client
