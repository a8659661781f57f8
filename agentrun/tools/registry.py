from __future__ import annotations

import asyncio
import json
import logging
import re
from contextlib import contextmanager
from typing import Any, Iterator

from agentrun.errors import (
    ConfigurationError,
    DuplicateToolName,
    HandlerError,
    InvalidArguments,
    InvalidState,
    ToolError,
    ToolTimeout,
    UnknownTool,
)
from agentrun.llm.types import Message, ToolCall, tool_message
from agentrun.tools.base import Tool
from agentrun.tools.validation import ToolValidator

logger = logging.getLogger(__name__)

_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def serialize_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._locks = 0

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        self._ensure_unlocked("register")
        if not isinstance(tool.name, str) or not _TOOL_NAME_RE.match(tool.name):
            raise ConfigurationError(f"Invalid tool name: {tool.name!r}", tool=str(tool.name))
        if tool.name in self._tools and not overwrite:
            raise DuplicateToolName(tool.name)
        schema_error = ToolValidator.check_schema(tool)
        if schema_error:
            raise ConfigurationError(
                f"Invalid parameter schema for {tool.name}: {schema_error}",
                tool=tool.name,
            )
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        self._ensure_unlocked("unregister")
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        t = self.get(name)
        if not t:
            raise UnknownTool(name)
        return t

    def list(self) -> list[Tool]:
        return sorted(self._tools.values(), key=lambda t: t.name)

    def to_schema(self) -> list[dict]:
        return [t.to_schema() for t in self.list()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @contextmanager
    def locked(self) -> Iterator[ToolRegistry]:
        """Forbid (un)registration while held; a run holds it end to end."""
        self._locks += 1
        try:
            yield self
        finally:
            self._locks -= 1

    def _ensure_unlocked(self, op: str) -> None:
        if self._locks:
            raise InvalidState(f"Cannot {op} tools while a run is in progress")

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def invoke(
        self,
        name: str,
        raw_arguments: str | dict | None,
        *,
        call_id: str,
        timeout: float | None = None,
    ) -> Message:
        """
        Validate and run one tool call, returning the tool result message.

        Raises ``UnknownTool`` or ``InvalidArguments`` before the handler
        runs.  Handler failures (exceptions and timeouts) do not propagate:
        they are encoded as an error object in the returned message.
        """
        message, error = await self._invoke(name, raw_arguments, call_id, timeout)
        if error is not None and not isinstance(error, HandlerError):
            raise error
        return message

    async def resolve(
        self, call: ToolCall, *, timeout: float | None = None
    ) -> tuple[Message, ToolError | None]:
        """
        Resolve a model tool call without raising tool errors.

        Every ``ToolError`` becomes an error result message, returned
        together with the error itself.
        """
        return await self._invoke(call.name, call.arguments, call.id, timeout)

    async def _invoke(
        self,
        name: str,
        raw_arguments: str | dict | None,
        call_id: str,
        timeout: float | None,
    ) -> tuple[Message, ToolError | None]:
        tool = self.get(name)
        if tool is None:
            error: ToolError = UnknownTool(name)
            return self._error_result(call_id, name, error), error

        arguments, violations = ToolValidator.decode(raw_arguments)
        if not violations:
            violations = ToolValidator.validate(tool, arguments)
        if violations:
            error = InvalidArguments(name, violations)
            return self._error_result(call_id, name, error), error

        try:
            if timeout is not None:
                result = await asyncio.wait_for(tool.execute(**arguments), timeout=timeout)
            else:
                result = await tool.execute(**arguments)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", name, timeout)
            error = ToolTimeout(name, timeout or 0.0)
            return self._error_result(call_id, name, error), error
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Tool %s raised %s: %s", name, type(e).__name__, e)
            error = HandlerError(f"{type(e).__name__}: {e}", tool=name, cause=e)
            return self._error_result(call_id, name, error), error

        message = tool_message(
            serialize_result(result),
            tool_call_id=call_id,
            tool_name=name,
            metadata={"success": True},
        )
        return message, None

    @classmethod
    def error_message(cls, call: ToolCall, error: ToolError) -> Message:
        """Encode a recoverable tool error as the result message for *call*."""
        return cls._error_result(call.id, call.name, error)

    @staticmethod
    def _error_result(call_id: str, name: str, error: ToolError) -> Message:
        return tool_message(
            json.dumps({"error": error.to_dict()}),
            tool_call_id=call_id,
            tool_name=name,
            metadata={"success": False, "error_code": error.code},
        )
