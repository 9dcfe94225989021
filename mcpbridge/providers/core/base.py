"""Provider base implementation with configuration and lifecycle management.

Tool providers follow one lifecycle: construct with validated settings,
``initialize`` once (guarded by a lock), use, then ``shutdown``.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, TypeVar, cast

from pydantic import Field

from mcpbridge.core.errors.errors import ErrorContext, ProviderError
from mcpbridge.core.errors.models import ProviderErrorContext
from mcpbridge.core.models import StrictBaseModel

from .provider_base import ProviderBase

logger = logging.getLogger(__name__)

T = TypeVar('T', bound='ProviderSettings')


class ProviderSettings(StrictBaseModel):
    """Base settings for providers.

    Contains only the fields that apply to every provider type.
    """

    timeout: float = Field(default=300.0, description="Operation timeout in seconds")
    max_retries: int = Field(default=3, description="Maximum number of retry attempts for execute_with_retry")
    retry_delay_seconds: float = Field(default=1.0, description="Delay between retry attempts in seconds")

    def with_overrides(self, **kwargs: Any) -> 'ProviderSettings':
        """Create new settings with overrides.

        Args:
            **kwargs: Settings to override

        Returns:
            New settings instance with overrides
        """
        settings_dict = self.model_dump()
        settings_dict.update(kwargs)
        return self.__class__.model_validate(settings_dict, strict=False)


class Provider(ProviderBase[T]):
    """Base class for all providers with lifecycle management.

    This class provides:
    1. Consistent initialization and cleanup pattern
    2. Configuration via settings models
    3. Uniform error wrapping at the provider boundary
    """
    def __init__(
        self,
        name: str,
        provider_type: str,
        settings: Optional[Any] = None,
        **kwargs: Any
    ):
        if settings is None:
            settings = cast(T, self._default_settings())

        super().__init__(name=name, provider_type=provider_type, settings=settings, **kwargs)
        self._initialized = False
        self._setup_lock = asyncio.Lock()
        logger.debug(f"Created provider: {name} ({self.provider_type}) with settings: {self.settings!r}")

    @property
    def initialized(self) -> bool:
        """Check if provider is initialized."""
        return self._initialized

    def _default_settings(self) -> ProviderSettings:
        """Create default settings instance.

        Raises:
            TypeError: If the provider class does not declare a settings type
        """
        settings_class = getattr(self.__class__, 'settings_class', None)
        if settings_class is None:
            for base in self.__class__.__mro__:
                metadata = getattr(base, '__pydantic_generic_metadata__', None)
                if metadata and metadata.get('origin') is Provider and metadata.get('args'):
                    settings_class = metadata['args'][0]
                    break

        if settings_class is None or not isinstance(settings_class, type):
            raise TypeError(
                f"Provider class {self.__class__.__name__} must specify settings type.\n"
                f"Use either: @provider(settings_class=YourSettings) decorator or "
                f"class {self.__class__.__name__}(Provider[{self.__class__.__name__}Settings])"
            )

        settings_instance = settings_class()
        if not isinstance(settings_instance, ProviderSettings):
            raise TypeError(f"Settings class must return ProviderSettings instance, got {type(settings_instance)}")
        return settings_instance

    def _error(self, message: str, operation: str, cause: Optional[Exception] = None) -> ProviderError:
        """Build a ProviderError carrying this provider's context."""
        return ProviderError(
            message=message,
            context=ErrorContext.create(
                flow_name="provider_base",
                error_type=type(cause).__name__ if cause else "ProviderError",
                error_location=f"{self.__class__.__name__}.{operation}",
                component=self.name,
                operation=operation
            ),
            provider_context=ProviderErrorContext(
                provider_name=self.name,
                provider_type=self.provider_type,
                operation=operation,
                retry_count=0
            ),
            cause=cause
        )

    async def initialize(self) -> None:
        """Initialize the provider.

        Only the first call does any work; concurrent callers wait on a lock.

        Raises:
            ProviderError: If initialization fails
        """
        if self._initialized:
            return

        async with self._setup_lock:
            # Double-checked locking pattern
            if self._initialized:
                return  # type: ignore[unreachable]

            try:
                await self._initialize()
                self._initialized = True
                logger.info(f"Provider '{self.name}' initialized successfully")
            except Exception as e:
                logger.error(f"Failed to initialize provider '{self.name}': {str(e)}")
                raise self._error(f"Failed to initialize provider: {str(e)}", "initialize", e) from e

    async def shutdown(self) -> None:
        """Close provider resources.

        Shutdown errors are logged and never re-raised.
        """
        if not self._initialized:
            return

        try:
            await self._shutdown()
            logger.info(f"Provider '{self.name}' shut down successfully")
        except Exception as e:
            logger.error(f"Error shutting down provider '{self.name}': {str(e)}")
        finally:
            self._initialized = False

    async def _initialize(self) -> None:
        """Concrete initialization logic implemented by subclasses."""
        raise NotImplementedError("Subclasses must implement _initialize().")

    async def _shutdown(self) -> None:
        """Concrete shutdown logic implemented by subclasses."""
        pass

    async def execute_with_retry(
        self,
        operation: Callable[..., Any],
        *args: Any,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        **kwargs: Any
    ) -> Any:
        """Execute an operation with retry and timeout handling.

        The bridge never calls this itself; it is offered to callers that
        decide a failed tool call is worth repeating.

        Args:
            operation: Async callable to execute
            *args: Arguments for the operation
            retries: Number of retries (defaults to settings)
            retry_delay: Delay between retries in seconds (defaults to settings)
            timeout: Timeout in seconds (defaults to settings)
            **kwargs: Keyword arguments for the operation

        Returns:
            Operation result

        Raises:
            ProviderError: If operation fails after retries or times out
        """
        max_retries = retries if retries is not None else self.settings.max_retries
        delay = retry_delay if retry_delay is not None else self.settings.retry_delay_seconds
        timeout_seconds = timeout if timeout is not None else self.settings.timeout

        if not self._initialized:
            await self.initialize()

        attempt = 0
        last_error: Optional[Exception] = None

        while attempt <= max_retries:
            try:
                if timeout_seconds:
                    return await asyncio.wait_for(operation(*args, **kwargs), timeout=timeout_seconds)
                return await operation(*args, **kwargs)

            except asyncio.TimeoutError as e:
                logger.warning(f"Provider {self.name} operation timed out after {timeout_seconds}s")
                last_error = e
                attempt += 1
                break  # Don't retry on timeout

            except Exception as e:
                attempt += 1
                last_error = e

                if attempt <= max_retries:
                    logger.warning(
                        f"Provider {self.name} operation failed (attempt {attempt}/{max_retries}): {str(e)}"
                    )
                    await asyncio.sleep(delay)

        error_msg = f"Provider operation failed after {attempt} attempt(s)"
        logger.error(f"{error_msg}: {str(last_error)}")

        error = self._error(error_msg, "execute_with_retry", last_error)
        error.provider_context = ProviderErrorContext(
            provider_name=self.name,
            provider_type=self.provider_type,
            operation="execute_with_retry",
            retry_count=attempt
        )
        raise error

    async def check_connection(self) -> bool:
        """Report whether the provider's backing connection is alive."""
        return self._initialized

    async def test_connection(self) -> Dict[str, Any]:
        """Test the provider connection and return connection status.

        Returns:
            Dict with ``success``, ``message``, ``provider_type``,
            ``provider_name`` and ``error_details`` keys
        """
        result: Dict[str, Any] = {
            "success": False,
            "message": "Connection test failed",
            "provider_type": self.provider_type,
            "provider_name": self.name,
            "error_details": None
        }

        try:
            if not self._initialized:
                await self.initialize()

            if await self.check_connection():
                result.update({
                    "success": True,
                    "message": f"Connection to {self.provider_type} provider '{self.name}' successful"
                })
            else:
                result.update({
                    "message": f"Connection to {self.provider_type} provider '{self.name}' failed - connection is not active"
                })

        except Exception as e:
            logger.error(f"Connection test failed for provider {self.name}: {str(e)}")
            result.update({
                "message": f"Connection test failed for {self.provider_type} provider '{self.name}': {str(e)}",
                "error_details": str(e)
            })

        return result
