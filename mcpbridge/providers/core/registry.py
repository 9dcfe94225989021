"""Provider registry.

Maps ``(provider_type, name)`` to provider factories and live provider
instances. Factories are registered by the ``@provider`` decorator; the
orchestration layer resolves a plain settings dict into an initialized
provider through :meth:`ProviderRegistry.create`.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

from mcpbridge.core.errors.errors import ConfigurationError, ErrorContext
from mcpbridge.core.errors.models import ConfigurationErrorContext

from .provider_base import ProviderBase

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., ProviderBase]


class ProviderRegistry:
    """Thread-safe registry of provider factories and instances."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

        # (provider_type, name) -> provider
        self._providers: dict[tuple[str, str], ProviderBase] = {}

        self._factories: dict[tuple[str, str], ProviderFactory] = {}
        self._factory_metadata: dict[tuple[str, str], dict[str, Any]] = {}
        self._settings_classes: dict[tuple[str, str], type] = {}

    def register_provider(self, provider: ProviderBase) -> None:
        """Register a provider instance.

        Args:
            provider: Provider to register (must be a ProviderBase subclass)

        Raises:
            TypeError: If the provider is not a ProviderBase subclass
        """
        if not isinstance(provider, ProviderBase):
            raise TypeError(f"Provider must be a ProviderBase subclass, got {type(provider)}")

        key = (provider.provider_type, provider.name)
        with self._lock:
            self._providers[key] = provider

        logger.info(f"Registered provider: {provider.name} (type: {provider.provider_type})")

    def register_factory(
        self,
        provider_type: str,
        name: str,
        factory: ProviderFactory,
        settings_class: type | None = None,
        **metadata: Any,
    ) -> None:
        """Register a factory for creating providers.

        Args:
            provider_type: Type of provider (e.g. mcp_client)
            name: Unique name for this provider implementation
            factory: Factory function that creates the provider
            settings_class: Pydantic model class for provider settings
            **metadata: Additional metadata about the provider
        """
        key = (provider_type, name)

        with self._lock:
            self._factories[key] = factory
            self._factory_metadata[key] = {"provider_type": provider_type, **metadata}
            if settings_class is not None:
                self._settings_classes[key] = settings_class

        logger.debug(f"Registered provider factory: {name} (type: {provider_type})")

    def get_settings_class(self, provider_type: str, name: str) -> type | None:
        """Get the settings class for a registered provider factory."""
        with self._lock:
            return self._settings_classes.get((provider_type, name))

    def has_factory(self, provider_type: str, name: str) -> bool:
        with self._lock:
            return (provider_type, name) in self._factories

    def create(
        self,
        provider_type: str,
        name: str,
        settings: dict[str, Any] | Any | None = None,
        instance_name: str | None = None,
    ) -> ProviderBase:
        """Create and register a provider instance from a registered factory.

        The provider is returned uninitialized; callers own its lifecycle.

        Args:
            provider_type: Type of provider
            name: Factory name
            settings: Plain settings dict or settings model instance
            instance_name: Name for the created instance, defaults to ``name``

        Returns:
            New provider instance

        Raises:
            ConfigurationError: If no factory is registered or settings are invalid
        """
        with self._lock:
            factory = self._factories.get((provider_type, name))

        if factory is None:
            raise ConfigurationError(
                message=f"No provider factory registered for '{name}' (type: {provider_type})",
                context=ErrorContext.create(
                    flow_name="provider_registry",
                    error_type="ProviderNotFound",
                    error_location=f"{self.__class__.__name__}.create",
                    component="provider_registry",
                    operation="create",
                ),
                config_context=ConfigurationErrorContext(
                    config_key=name,
                    config_section=provider_type,
                    expected_type="registered provider factory",
                    actual_value=name,
                ),
            )

        try:
            provider = factory(settings, instance_name)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                message=f"Invalid settings for provider '{name}': {e}",
                context=ErrorContext.create(
                    flow_name="provider_registry",
                    error_type=type(e).__name__,
                    error_location=f"{self.__class__.__name__}.create",
                    component="provider_registry",
                    operation="create",
                ),
                config_context=ConfigurationErrorContext(
                    config_key=name,
                    config_section=provider_type,
                    expected_type=getattr(self.get_settings_class(provider_type, name), "__name__", "settings"),
                    actual_value=repr(type(settings).__name__),
                ),
                cause=e,
            ) from e

        self.register_provider(provider)
        return provider

    def get_provider(self, provider_type: str, name: str) -> ProviderBase:
        """Get a registered provider instance.

        Raises:
            KeyError: If no provider is registered under that key
        """
        with self._lock:
            try:
                return self._providers[(provider_type, name)]
            except KeyError:
                raise KeyError(f"Provider '{name}' (type: {provider_type}) not found") from None

    def list_providers(self, provider_type: str | None = None) -> list[str]:
        """List registered provider instance names, optionally filtered by type."""
        with self._lock:
            return [
                name for (ptype, name) in self._providers
                if provider_type is None or ptype == provider_type
            ]

    def remove(self, provider_type: str, name: str) -> bool:
        with self._lock:
            return self._providers.pop((provider_type, name), None) is not None

    async def shutdown_all(self) -> None:
        """Shut down and forget every registered provider instance."""
        with self._lock:
            providers = list(self._providers.values())
            self._providers.clear()

        for provider in providers:
            shutdown = getattr(provider, "shutdown", None)
            if shutdown is None:
                continue
            try:
                await shutdown()
            except Exception as e:
                logger.warning(f"Error shutting down provider '{provider.name}': {e}")

    def clear(self) -> None:
        """Forget provider instances. Factories stay registered."""
        with self._lock:
            self._providers.clear()


provider_registry = ProviderRegistry()
