"""MCP (Model Context Protocol) provider implementations."""

from .base import (
    MCPConnectionError,
    MCPEnvironmentDeadError,
    MCPError,
    MCPMessage,
    MCPRequestTimeoutError,
    MCPTool,
    MCPToolNotFoundError,
    MCPTransport,
    decode_frame,
    encode_frame,
)
from .client.provider import MCPClientProvider, MCPClientSettings
from .correlator import RequestCorrelator
from .runtime import ContainerEnvironment, DockerContainerRuntime
from .tools import ToolSpecification, build_tools, collect_tools, tool_from_model
from .transport import BaseMCPTransport, DockerTransport, SSETransport, StdioTransport, create_transport

__all__ = [
    'MCPClientProvider',
    'MCPClientSettings',
    'MCPTool',
    'MCPMessage',
    'MCPTransport',
    'MCPError',
    'MCPConnectionError',
    'MCPEnvironmentDeadError',
    'MCPRequestTimeoutError',
    'MCPToolNotFoundError',
    'encode_frame',
    'decode_frame',
    'RequestCorrelator',
    'ContainerEnvironment',
    'DockerContainerRuntime',
    'BaseMCPTransport',
    'DockerTransport',
    'StdioTransport',
    'SSETransport',
    'create_transport',
    'ToolSpecification',
    'build_tools',
    'collect_tools',
    'tool_from_model',
]
