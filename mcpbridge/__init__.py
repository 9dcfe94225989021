"""mcpbridge.

Bridges Model Context Protocol tool servers into LLM tool-calling loops.

Key features:
1. JSON-RPC framing and response correlation over line-delimited streams
2. Container-hosted (Docker), local-process and HTTP/SSE server transports
3. Translation of OpenAPI-style schemas into the LLM tool dialect
4. Tool providers configured from settings, registered by decorator
"""

from mcpbridge.core.errors.errors import BaseError, ConfigurationError, ProviderError
from mcpbridge.core.settings.settings import BridgeSettings, get_settings, setup_logging
from mcpbridge.providers import Provider, provider_registry
from mcpbridge.providers.mcp import (
    MCPClientProvider,
    MCPClientSettings,
    MCPError,
    MCPTransport,
    ToolSpecification,
    build_tools,
    collect_tools,
    create_transport,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "BaseError",
    "ConfigurationError",
    "ProviderError",
    "MCPError",

    # Configuration
    "BridgeSettings",
    "get_settings",
    "setup_logging",

    # Providers
    "Provider",
    "provider_registry",
    "MCPClientProvider",
    "MCPClientSettings",

    # Transports and tools
    "MCPTransport",
    "create_transport",
    "ToolSpecification",
    "build_tools",
    "collect_tools",
]
