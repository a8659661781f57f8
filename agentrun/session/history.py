"""
Ordered conversation record owned by one orchestrator.

The history enforces tool-call linkage on every append: a tool result is
accepted only if it answers a call that the most recent assistant message
issued and that has not been answered yet.
"""

from __future__ import annotations

import logging
from typing import Iterator

from agentrun.errors import InvariantViolation
from agentrun.llm.types import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    Message,
    ToolCall,
)

logger = logging.getLogger(__name__)


class ConversationHistory:
    """
    Append-only (between resets) sequence of ``Message`` objects.

    Parameters
    ----------
    max_entries:
        Capacity bound applied by ``evict_if_over_capacity``.  ``None``
        means unbounded.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._messages: list[Message] = []
        self._pending: dict[str, ToolCall] = {}
        self._open: Message | None = None
        self._seen_call_ids: set[str] = set()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, message: Message) -> None:
        """
        Add one message at the end.

        Raises
        ------
        InvariantViolation
            If a tool message does not answer an outstanding call, names a
            different tool than the call, or an assistant message reuses a
            tool-call id.
        """
        if message.role == ROLE_TOOL:
            self._link_result(message)
        elif message.role != ROLE_SYSTEM:
            self._abandon_pending()
            if message.role == ROLE_ASSISTANT and message.tool_calls:
                self._open_calls(message)
        self._messages.append(message)

    def _open_calls(self, message: Message) -> None:
        ids = [tc.id for tc in message.tool_calls or ()]
        if len(set(ids)) != len(ids):
            raise InvariantViolation(f"Duplicate tool-call id in one message: {ids}")
        reused = self._seen_call_ids.intersection(ids)
        if reused:
            raise InvariantViolation(f"Tool-call id already used: {sorted(reused)}")
        self._seen_call_ids.update(ids)
        self._pending = {tc.id: tc for tc in message.tool_calls or ()}
        self._open = message

    def _link_result(self, message: Message) -> None:
        call = self._pending.get(message.tool_call_id or "")
        if call is None:
            raise InvariantViolation(
                f"Tool result {message.tool_call_id!r} has no outstanding tool call"
            )
        if message.tool_name is not None and message.tool_name != call.name:
            raise InvariantViolation(
                f"Tool result for {message.tool_call_id!r} names {message.tool_name!r}, "
                f"call was for {call.name!r}"
            )
        del self._pending[call.id]
        if not self._pending:
            self._open = None

    def _abandon_pending(self) -> None:
        if self._pending:
            logger.warning(
                "Abandoning %d unresolved tool call(s): %s",
                len(self._pending),
                ", ".join(self._pending),
            )
        self._pending = {}
        self._open = None

    def clear(self, preserve_system: bool = True) -> None:
        """Remove all entries, keeping system messages if *preserve_system*."""
        if preserve_system:
            self._messages = [m for m in self._messages if m.role == ROLE_SYSTEM]
        else:
            self._messages = []
        self._pending = {}
        self._open = None
        self._seen_call_ids.clear()

    def evict_if_over_capacity(self) -> list[Message]:
        """
        Drop the oldest non-system entries until the size fits.

        An assistant message with tool calls leaves together with its tool
        results.  Eviction stops at a group whose calls are still pending.
        Returns the evicted messages, oldest first.
        """
        if self.max_entries is None:
            return []
        evicted: list[Message] = []
        while len(self._messages) > self.max_entries:
            group = self._oldest_group()
            if not group:
                break
            drop = {id(m) for m in group}
            self._messages = [m for m in self._messages if id(m) not in drop]
            evicted.extend(group)
        if evicted:
            logger.debug("Evicted %d message(s) from history", len(evicted))
        return evicted

    def _oldest_group(self) -> list[Message]:
        for i, msg in enumerate(self._messages):
            if msg.role == ROLE_SYSTEM:
                continue
            if msg is self._open:
                return []
            if msg.role == ROLE_ASSISTANT and msg.tool_calls:
                ids = {tc.id for tc in msg.tool_calls}
                results = [
                    m
                    for m in self._messages[i + 1 :]
                    if m.role == ROLE_TOOL and m.tool_call_id in ids
                ]
                return [msg, *results]
            return [msg]
        return []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def by_role(self, role: str) -> list[Message]:
        return [m for m in self._messages if m.role == role]

    def recent(self, count: int) -> list[Message]:
        if count <= 0:
            return []
        return self._messages[-count:]

    @property
    def pending_tool_calls(self) -> list[ToolCall]:
        """Calls of the latest assistant message still awaiting a result."""
        return list(self._pending.values())

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))
