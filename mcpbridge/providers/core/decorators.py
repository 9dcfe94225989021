from collections.abc import Callable
from typing import Any

from .provider_base import ProviderBase
from .registry import provider_registry


def provider(
    name: str, provider_type: str = "mcp_client", *, settings_class: type | None = None, **metadata: Any
) -> Callable[[type], type]:
    """
    Register a class as a provider factory.
    Enforces contract: only ProviderBase subclasses (pydantic v2) can be registered.
    Requires a settings_class argument (Pydantic v2 class) for contract-compliant configuration.
    Fails fast if not provided.
    """
    if settings_class is None:
        raise TypeError(
            f"Provider '{name}' must supply a 'settings_class' argument (Pydantic v2 class)"
        )

    def decorator(cls: type) -> type:
        if not isinstance(cls, type) or not issubclass(cls, ProviderBase):
            raise TypeError(
                f"Provider '{name}' must be a ProviderBase subclass (pydantic v2), got {type(cls)}"
            )

        def factory(runtime_settings: dict[str, Any] | Any | None = None, instance_name: str | None = None) -> Any:
            # Runtime settings from configuration win over settings_class defaults
            if runtime_settings is None:
                settings = settings_class()
            elif isinstance(runtime_settings, settings_class):
                settings = runtime_settings
            elif isinstance(runtime_settings, dict):
                try:
                    settings = settings_class(**runtime_settings)
                except Exception as e:
                    raise ValueError(
                        f"Error parsing runtime_settings for '{name}' with {settings_class.__name__}: {e}"
                    ) from e
            else:
                raise TypeError(
                    f"Settings for '{name}' must be a dict or an instance of {settings_class.__name__}, "
                    f"got {type(runtime_settings)}"
                )

            return cls(
                name=instance_name or name,
                provider_type=provider_type,
                settings=settings,
            )

        provider_registry.register_factory(
            name=name, factory=factory, provider_type=provider_type, settings_class=settings_class, **metadata
        )
        cls.__provider_name__ = name  # type: ignore[attr-defined]
        cls.__provider_type__ = provider_type  # type: ignore[attr-defined]
        cls.__provider_metadata__ = metadata  # type: ignore[attr-defined]
        cls.settings_class = settings_class  # type: ignore[attr-defined]

        return cls

    return decorator
