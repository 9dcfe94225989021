"""Provider package.

- core: provider base classes, the ``provider`` decorator and the registry
- mcp: the MCP client provider and its transports
"""

from .core.base import Provider, ProviderSettings
from .core.decorators import provider
from .core.registry import provider_registry

__all__ = [
    "Provider",
    "ProviderSettings",
    "provider",
    "provider_registry",
]
