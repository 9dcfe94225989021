"""Tests for the provider lifecycle."""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from mcpbridge.core.errors.errors import ProviderError
from mcpbridge.providers.core.base import Provider, ProviderSettings


class CountingSettings(ProviderSettings):
    """Settings for the counting provider."""
    label: str = "counter"


class CountingProvider(Provider[CountingSettings]):
    """Counts lifecycle calls and can be told to fail."""

    def __init__(self, fail_with: Exception | None = None, **kwargs):
        super().__init__(name=kwargs.pop("name", "counter"), provider_type="test", **kwargs)
        self._fail_with = fail_with
        self._initialize_calls = 0

    async def _initialize(self) -> None:
        self._initialize_calls += 1
        await asyncio.sleep(0)
        if self._fail_with is not None:
            raise self._fail_with


class TestProviderSettings:
    """Test ProviderSettings."""

    def test_defaults(self):
        """Test default values."""
        settings = CountingSettings()

        assert settings.timeout == 300.0
        assert settings.max_retries == 3

    def test_with_overrides(self):
        """Test overrides produce a new validated instance."""
        settings = CountingSettings().with_overrides(label="other", max_retries=0)

        assert settings.label == "other"
        assert settings.max_retries == 0

    def test_frozen(self):
        """Test settings cannot be mutated."""
        settings = CountingSettings()

        with pytest.raises(Exception):
            settings.label = "changed"

    @pytest.mark.parametrize("field", ["verbose", "custom_settings"])
    def test_unknown_fields_rejected(self, field):
        """Test settings only accept the fields providers actually read."""
        with pytest.raises(ValidationError):
            CountingSettings(**{field: True})


class TestProviderLifecycle:
    """Test Provider initialize and shutdown."""

    def test_default_settings_from_generic(self):
        """Test settings default to the generic parameter."""
        assert isinstance(CountingProvider().settings, CountingSettings)

    @pytest.mark.asyncio
    async def test_initialize_once(self):
        """Test concurrent initialize calls run the setup once."""
        counter = CountingProvider()

        await asyncio.gather(counter.initialize(), counter.initialize(), counter.initialize())

        assert counter.initialized
        assert counter._initialize_calls == 1

    @pytest.mark.asyncio
    async def test_initialize_failure_is_wrapped(self):
        """Test setup failures become ProviderError with the cause attached."""
        counter = CountingProvider(fail_with=ConnectionError("refused"))

        with pytest.raises(ProviderError) as exc_info:
            await counter.initialize()

        assert isinstance(exc_info.value.cause, ConnectionError)
        assert exc_info.value.provider_context.operation == "initialize"
        assert not counter.initialized

    @pytest.mark.asyncio
    async def test_shutdown_logs_errors(self, caplog):
        """Test shutdown errors are logged and the provider is reset."""
        counter = CountingProvider()
        await counter.initialize()
        counter._shutdown = AsyncMock(side_effect=RuntimeError("stuck"))

        with caplog.at_level(logging.ERROR):
            await counter.shutdown()

        assert not counter.initialized
        assert "stuck" in caplog.text

    @pytest.mark.asyncio
    async def test_test_connection(self):
        """Test the connection report after initializing."""
        result = await CountingProvider().test_connection()

        assert result["success"] is True
        assert result["provider_name"] == "counter"

    @pytest.mark.asyncio
    async def test_test_connection_failure(self):
        """Test the connection report carries the failure."""
        result = await CountingProvider(fail_with=ConnectionError("refused")).test_connection()

        assert result["success"] is False
        assert "refused" in result["error_details"]


class TestExecuteWithRetry:
    """Test execute_with_retry."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        """Test transient failures are retried."""
        counter = CountingProvider(settings=CountingSettings(retry_delay_seconds=0.0))
        operation = AsyncMock(side_effect=[RuntimeError("flaky"), "ok"])

        assert await counter.execute_with_retry(operation) == "ok"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up(self):
        """Test exhausting retries raises ProviderError with the retry count."""
        counter = CountingProvider(settings=CountingSettings(retry_delay_seconds=0.0, max_retries=1))
        operation = AsyncMock(side_effect=RuntimeError("down"))

        with pytest.raises(ProviderError) as exc_info:
            await counter.execute_with_retry(operation)

        assert exc_info.value.provider_context.retry_count == 2
        assert operation.await_count == 2
