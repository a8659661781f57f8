"""
Provider registry -- keyed collection of Model Backends.

Providers are validated once, at registration.  Selecting the current
provider and model is a pointer update; conversation history is
provider-agnostic and never touched here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agentrun.errors import ConfigurationError
from agentrun.llm.providers.base import Provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderDescriptor:
    """Capability record for a registered provider."""

    name: str
    provider: Provider
    supports_tools: bool
    supports_streaming: bool


class ProviderRegistry:
    """
    Holds named providers and the current provider/model selection.
    """

    def __init__(self) -> None:
        self._providers: dict[str, ProviderDescriptor] = {}
        self._current: str | None = None
        self._model: str | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        provider: Provider,
        *,
        model: str | None = None,
        overwrite: bool = False,
    ) -> ProviderDescriptor:
        """
        Register *provider* under *name*.

        The first registered provider becomes current.  Raises
        ``ConfigurationError`` for an empty or duplicate name, or when
        ``provider.validate_config()`` fails.
        """
        if not name:
            raise ConfigurationError("Provider name must not be empty")
        if not isinstance(provider, Provider):
            raise ConfigurationError(
                f"Provider {name!r} must implement the Provider interface",
                provider=name,
            )
        if name in self._providers and not overwrite:
            raise ConfigurationError(
                f"Provider already registered: {name}", provider=name
            )
        if not provider.validate_config():
            raise ConfigurationError(
                f"Provider {name!r} failed configuration validation",
                provider=name,
            )

        descriptor = ProviderDescriptor(
            name=name,
            provider=provider,
            supports_tools=provider.supports_tools,
            supports_streaming=provider.supports_streaming,
        )
        self._providers[name] = descriptor
        logger.debug(
            "Registered provider %s (tools=%s streaming=%s)",
            name, descriptor.supports_tools, descriptor.supports_streaming,
        )
        if self._current is None:
            self._current = name
            self._model = model
        return descriptor

    async def remove(self, name: str) -> bool:
        """
        Remove and dispose the provider registered as *name*.

        Returns ``False`` if nothing was registered under that name.
        """
        descriptor = self._providers.pop(name, None)
        if descriptor is None:
            logger.warning("Attempted to remove unknown provider %s", name)
            return False
        if self._current == name:
            self._current = None
            self._model = None
        try:
            await descriptor.provider.dispose()
        except Exception:
            logger.exception("Failed to dispose provider %s", name)
        return True

    async def dispose_all(self) -> None:
        for name in list(self._providers):
            await self.remove(name)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> Provider | None:
        descriptor = self._providers.get(name)
        return descriptor.provider if descriptor else None

    def descriptor(self, name: str) -> ProviderDescriptor:
        """
        Return the descriptor for *name*.

        Raises ``ConfigurationError`` if *name* has not been registered.
        """
        try:
            return self._providers[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown provider {name!r}. Registered: {list(self._providers)}",
                provider=name,
            ) from None

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    # ------------------------------------------------------------------
    # Current selection
    # ------------------------------------------------------------------

    def set_current(self, name: str, model: str | None = None) -> None:
        """Switch the current provider, and the model when given."""
        self.descriptor(name)
        if name != self._current:
            self._model = None
        self._current = name
        if model is not None:
            self._model = model
        logger.debug("Current provider set to %s (model=%s)", name, self._model)

    def set_model(self, model: str) -> None:
        if self._current is None:
            raise ConfigurationError("No current provider to set a model on")
        self._model = model

    @property
    def current_name(self) -> str | None:
        return self._current

    @property
    def current_model(self) -> str | None:
        return self._model

    @property
    def current(self) -> ProviderDescriptor:
        """
        Return the current provider's descriptor.

        Raises ``ConfigurationError`` if no provider is selected.
        """
        if self._current is None or self._current not in self._providers:
            raise ConfigurationError("No current LLM provider")
        return self._providers[self._current]

    @property
    def is_configured(self) -> bool:
        return self._current is not None and self._current in self._providers
