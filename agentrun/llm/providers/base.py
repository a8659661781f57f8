"""Abstract base class for LLM providers (the Model Backend contract)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from agentrun.llm.types import Message, StreamChunk


@dataclass
class CallOptions:
    """Per-call generation settings passed through to the provider."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """
    A provider encapsulates access to a single LLM endpoint.

    Implementations must support:
      - A non-streaming call (``complete``) returning an assistant message.
      - A streaming call (``stream``) yielding ``StreamChunk`` objects, the
        last of which has ``done=True``.

    Translation to and from a backend's wire format is entirely the
    provider's job.  Retries and timeouts are applied by the caller.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name (e.g. ``"openai-compat"``)."""
        ...

    @property
    def supports_tools(self) -> bool:
        """Whether tool declarations may be sent to this backend."""
        return True

    @property
    def supports_streaming(self) -> bool:
        return True

    def validate_config(self) -> bool:
        """Return ``False`` if the provider is not usable as configured."""
        return True

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
        options: CallOptions | None = None,
    ) -> Message:
        """Run a non-streaming completion and return the assistant message."""
        ...

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
        options: CallOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Start a streaming completion.

        Yields ``StreamChunk`` objects.  The last chunk has ``done=True``.
        """
        ...

    async def dispose(self) -> None:
        """Release any resources held by the provider."""
        return None
