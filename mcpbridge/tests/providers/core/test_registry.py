"""Tests for the provider registry and the provider decorator."""

import logging
from typing import Any

import pytest

from mcpbridge.core.errors.errors import ConfigurationError
from mcpbridge.providers.core.base import Provider, ProviderSettings
from mcpbridge.providers.core.decorators import provider
from mcpbridge.providers.core.registry import ProviderRegistry, provider_registry


class EchoSettings(ProviderSettings):
    """Settings for the echo provider."""
    prefix: str = "echo"


class EchoProvider(Provider[EchoSettings]):
    """Provider used to exercise the registry."""

    def __init__(self, name: str = "echo", provider_type: str = "test", settings: Any = None):
        super().__init__(name=name, provider_type=provider_type, settings=settings)
        self._shutdown_called = False

    async def _initialize(self) -> None:
        pass

    async def _shutdown(self) -> None:
        self._shutdown_called = True


class TestProviderRegistry:
    """Test ProviderRegistry."""

    @pytest.fixture
    def registry(self):
        registry = ProviderRegistry()
        registry.register_factory(
            "test",
            "echo",
            lambda settings=None, instance_name=None: EchoProvider(
                name=instance_name or "echo",
                settings=EchoSettings(**settings) if isinstance(settings, dict) else settings,
            ),
            settings_class=EchoSettings,
        )
        return registry

    def test_register_and_get(self, registry):
        """Test registering and retrieving a provider instance."""
        echo = EchoProvider()

        registry.register_provider(echo)

        assert registry.get_provider("test", "echo") is echo
        assert registry.list_providers() == ["echo"]
        assert registry.list_providers("other") == []

    def test_register_rejects_non_provider(self, registry):
        """Test only ProviderBase instances can be registered."""
        with pytest.raises(TypeError):
            registry.register_provider(object())

    def test_get_missing(self, registry):
        """Test a missing provider raises KeyError."""
        with pytest.raises(KeyError) as exc_info:
            registry.get_provider("test", "missing")

        assert "missing" in str(exc_info.value)

    def test_create_from_dict(self, registry):
        """Test create builds and registers a provider from a dict."""
        created = registry.create("test", "echo", {"prefix": ">>"}, instance_name="loud")

        assert created.settings.prefix == ">>"
        assert registry.get_provider("test", "loud") is created
        assert registry.get_settings_class("test", "echo") is EchoSettings

    def test_create_unknown_factory(self, registry):
        """Test an unknown factory is a configuration error."""
        with pytest.raises(ConfigurationError) as exc_info:
            registry.create("test", "nope")

        assert exc_info.value.config_context.config_key == "nope"

    def test_create_invalid_settings(self, registry):
        """Test invalid settings are reported as a configuration error."""
        with pytest.raises(ConfigurationError) as exc_info:
            registry.create("test", "echo", {"prefix": 42})

        assert "Invalid settings for provider 'echo'" in str(exc_info.value)
        assert exc_info.value.cause is not None

    def test_remove_and_clear(self, registry):
        """Test removal and clearing keep factories."""
        registry.register_provider(EchoProvider())

        assert registry.remove("test", "echo") is True
        assert registry.remove("test", "echo") is False
        registry.register_provider(EchoProvider())
        registry.clear()

        assert registry.list_providers() == []
        assert registry.has_factory("test", "echo")

    @pytest.mark.asyncio
    async def test_shutdown_all(self, registry, caplog):
        """Test every initialized provider is shut down and forgotten."""
        healthy = EchoProvider(name="healthy")
        await healthy.initialize()
        registry.register_provider(healthy)

        await registry.shutdown_all()

        assert healthy._shutdown_called
        assert registry.list_providers() == []


class TestProviderDecorator:
    """Test the provider decorator."""

    def test_requires_settings_class(self):
        """Test a settings class is mandatory."""
        with pytest.raises(TypeError):
            provider("no-settings")

    def test_rejects_non_provider_class(self):
        """Test only ProviderBase subclasses can be decorated."""
        with pytest.raises(TypeError):
            provider("plain", settings_class=EchoSettings)(object)

    def test_registers_factory(self):
        """Test decorating registers a factory that accepts dicts and instances."""
        @provider("decorated-echo", provider_type="test", settings_class=EchoSettings, purpose="tests")
        class DecoratedEcho(EchoProvider):
            pass

        try:
            assert DecoratedEcho.__provider_name__ == "decorated-echo"
            assert DecoratedEcho.__provider_metadata__ == {"purpose": "tests"}

            from_dict = provider_registry.create("test", "decorated-echo", {"prefix": "#"})
            assert isinstance(from_dict, DecoratedEcho)
            assert from_dict.settings.prefix == "#"

            with pytest.raises(ConfigurationError):
                provider_registry.create("test", "decorated-echo", ["not", "settings"])
        finally:
            provider_registry.remove("test", "decorated-echo")
