"""Core types for the LLM subsystem."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from agentrun.errors import InvariantViolation

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"

ROLES = frozenset({ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_tool_call_id() -> str:
    """Id for a tool call the backend left unnamed."""
    return f"call_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class ToolCall:
    """
    A tool call requested by the model.

    *arguments* is the raw JSON text exactly as the model produced it.
    """

    id: str
    name: str
    arguments: str = ""

    def parse_arguments(self) -> Any:
        """Decode the argument text.  Empty text decodes to ``{}``."""
        if not self.arguments.strip():
            return {}
        return json.loads(self.arguments)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(frozen=True)
class Message:
    """A single message in a conversation.  Immutable once created."""

    role: str
    content: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    usage: Usage | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise InvariantViolation(f"Unknown message role: {self.role!r}")
        if self.tool_calls is not None:
            if self.role != ROLE_ASSISTANT:
                raise InvariantViolation(
                    f"tool_calls are only allowed on assistant messages, got {self.role}"
                )
            if not isinstance(self.tool_calls, tuple):
                object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        if self.role == ROLE_TOOL:
            if not self.tool_call_id:
                raise InvariantViolation("Tool messages require a tool_call_id")
        elif self.tool_call_id is not None or self.tool_name is not None:
            raise InvariantViolation(
                f"tool_call_id/tool_name are only allowed on tool messages, got {self.role}"
            )
        if self.content is None:
            object.__setattr__(self, "content", "")

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict suitable for JSON export."""
        d: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.tool_calls is not None:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            d["tool_call_id"] = self.tool_call_id
        if self.tool_name is not None:
            d["tool_name"] = self.tool_name
        if self.usage is not None:
            d["usage"] = {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            }
        if self.metadata:
            d["metadata"] = dict(self.metadata)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Reconstruct a Message from a dict produced by ``to_dict``."""
        data = dict(data)  # shallow copy so we don't mutate the caller's dict
        ts = data.get("timestamp")
        if isinstance(ts, str):
            data["timestamp"] = datetime.fromisoformat(ts)
        raw_calls = data.get("tool_calls")
        if raw_calls is not None:
            data["tool_calls"] = tuple(ToolCall(**tc) for tc in raw_calls)
        raw_usage = data.get("usage")
        if isinstance(raw_usage, dict):
            data["usage"] = Usage(**raw_usage)
        return cls(**data)


@dataclass
class RawToolDelta:
    """
    An incremental delta for a streaming tool call.

    Providers emit these as tool-call fragments arrive.  The
    StreamAggregator merges them by ``call_index``.
    """

    call_index: int
    id: str | None = None
    name_delta: str = ""
    args_delta: str = ""


@dataclass
class StreamChunk:
    """
    A single chunk yielded while streaming a chat completion.

    *delta* carries new text content.
    *tool_deltas* carries incremental tool-call fragments.
    *done* is ``True`` on the completion marker, which may also carry the
    ``finish_reason`` and token ``usage``.
    """

    delta: str = ""
    tool_deltas: list[RawToolDelta] | None = None
    done: bool = False
    finish_reason: str | None = None
    usage: Usage | None = None


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def system_message(content: str, metadata: dict[str, Any] | None = None) -> Message:
    """Create a ``system`` message."""
    return Message(role=ROLE_SYSTEM, content=content, metadata=dict(metadata or {}))


def user_message(content: str, metadata: dict[str, Any] | None = None) -> Message:
    """Create a ``user`` message."""
    return Message(role=ROLE_USER, content=content, metadata=dict(metadata or {}))


def assistant_message(
    content: str = "",
    tool_calls: list[ToolCall] | tuple[ToolCall, ...] | None = None,
    usage: Usage | None = None,
    metadata: dict[str, Any] | None = None,
) -> Message:
    """Create an ``assistant`` message.  Empty *tool_calls* are dropped."""
    return Message(
        role=ROLE_ASSISTANT,
        content=content,
        tool_calls=tuple(tool_calls) if tool_calls else None,
        usage=usage,
        metadata=dict(metadata or {}),
    )


def tool_message(
    content: str,
    tool_call_id: str,
    tool_name: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Message:
    """Create a ``tool`` result message linked to *tool_call_id*."""
    return Message(
        role=ROLE_TOOL,
        content=content,
        tool_call_id=tool_call_id,
        tool_name=tool_name,
        metadata=dict(metadata or {}),
    )
