"""Base error classes with structured error context.

Transport level failures are modelled by the ``MCPError`` family in
``mcpbridge.providers.mcp.base``. The classes here cover the provider
framework: lifecycle failures and configuration problems.
"""

import logging
import traceback
from datetime import datetime
from typing import Any

from .models import (
    ConfigurationErrorContext,
    ErrorContextData,
    ProviderErrorContext,
)

logger = logging.getLogger(__name__)


class ErrorContext:
    """Structured context information attached to framework errors."""

    def __init__(self, context_data: ErrorContextData):
        """Initialize error context.

        Args:
            context_data: Required error context data
        """
        self._data = context_data

    @classmethod
    def create(
        cls, flow_name: str, error_type: str, error_location: str, component: str, operation: str
    ) -> "ErrorContext":
        """Create a new error context with required data.

        Args:
            flow_name: Name of the flow or subsystem
            error_type: Type of error
            error_location: Location in code
            component: Component raising error
            operation: Operation being performed

        Returns:
            New ErrorContext instance
        """
        context_data = ErrorContextData(
            flow_name=flow_name,
            error_type=error_type,
            error_location=error_location,
            component=component,
            operation=operation,
        )
        return cls(context_data)

    @property
    def data(self) -> ErrorContextData:
        """Get the context data."""
        return self._data

    @property
    def timestamp(self) -> datetime:
        """Get the context creation timestamp."""
        return self._data.timestamp

    def __str__(self) -> str:
        return f"ErrorContext({self._data.model_dump()})"


class BaseError(Exception):
    """Base class for all framework errors with context and cause tracking."""

    def __init__(self, message: str, context: ErrorContext, cause: Exception | None = None):
        """Initialize error.

        Args:
            message: Error message
            context: Required error context
            cause: Optional cause exception
        """
        self.message = message
        self.context = context
        self.cause = cause
        self.timestamp = datetime.now()
        self.traceback = self._capture_traceback()

        super().__init__(message)

    def _capture_traceback(self) -> str:
        """Capture the current traceback."""
        return traceback.format_exc()

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary.

        Returns:
            Dictionary representation of error
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context.data.model_dump(),
            "cause": str(self.cause) if self.cause else None,
            "traceback": self.traceback,
        }

    def __str__(self) -> str:
        cause_str = f" (caused by: {self.cause})" if self.cause else ""
        return f"{self.__class__.__name__}: {self.message}{cause_str}"


class ConfigurationError(BaseError):
    """Error raised when configuration is invalid or cannot be resolved."""

    def __init__(
        self,
        message: str,
        context: ErrorContext,
        config_context: ConfigurationErrorContext,
        cause: Exception | None = None,
    ):
        """Initialize configuration error.

        Args:
            message: Error message
            context: Required error context
            config_context: Required configuration error context
            cause: Optional cause exception
        """
        self.config_context = config_context
        super().__init__(message, context, cause)


class ProviderError(BaseError):
    """Error raised when provider operations fail."""

    def __init__(
        self,
        message: str,
        context: ErrorContext,
        provider_context: ProviderErrorContext,
        cause: Exception | None = None,
    ):
        """Initialize provider error.

        Args:
            message: Error message
            context: Required error context
            provider_context: Required provider error context
            cause: Optional cause exception
        """
        self.provider_context = provider_context
        super().__init__(message, context, cause)
