"""
Reduces a stream of ``StreamChunk`` objects into one assistant ``Message``.

Design goals:
  - Concatenate content fragments in arrival order.
  - Accumulate ``RawToolDelta`` fragments keyed by ``call_index``; argument
    text is only concatenated while the stream is open.
  - Parse argument text once, after the completion marker, and flag calls
    whose JSON is malformed in ``metadata["malformed_tool_calls"]``.  The
    calls themselves are kept so the tool registry can report the problem
    back to the model.
  - A stream that ends without a completion marker is an error
    (``IncompleteStream``), never a silently partial message.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterable, Awaitable, Callable

from agentrun.errors import IncompleteStream
from agentrun.llm.types import (
    Message,
    RawToolDelta,
    StreamChunk,
    ToolCall,
    Usage,
    assistant_message,
    new_tool_call_id,
)

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], Awaitable[None]]


class StreamAggregator:
    """Buffers streamed deltas and emits a finished assistant ``Message``."""

    def __init__(self, provider: str | None = None) -> None:
        self.provider = provider
        self._content: list[str] = []
        self._buf: dict[int, dict] = {}
        self._completed = False
        self._finish_reason: str | None = None
        self._usage: Usage | None = None

    @property
    def completed(self) -> bool:
        return self._completed

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, chunk: StreamChunk) -> None:
        """Merge a single chunk into the running state."""
        if self._completed:
            raise ValueError("Stream already completed; no further chunks accepted")

        if chunk.delta:
            self._content.append(chunk.delta)

        if chunk.tool_deltas:
            for td in chunk.tool_deltas:
                self._feed_tool_delta(td)

        if chunk.usage is not None:
            self._usage = chunk.usage

        if chunk.done:
            self._completed = True
            self._finish_reason = chunk.finish_reason

    def finish(self) -> Message:
        """
        Return the assembled assistant message.

        Raises ``IncompleteStream`` if no completion marker was observed.
        """
        if not self._completed:
            raise IncompleteStream(self.provider)

        calls: list[ToolCall] = []
        malformed: list[str] = []
        for idx in sorted(self._buf):
            buf = self._buf[idx]
            call = ToolCall(
                id=buf["id"] or new_tool_call_id(),
                name=buf["name"].strip(),
                arguments=buf["args"],
            )
            try:
                call.parse_arguments()
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning(
                    "tool_call_json_parse_failed idx=%d id=%s err=%s",
                    idx, call.id, exc,
                )
                malformed.append(call.id)
            calls.append(call)

        metadata: dict = {"stream_completed": True}
        if self._finish_reason is not None:
            metadata["finish_reason"] = self._finish_reason
        if malformed:
            metadata["malformed_tool_calls"] = malformed

        return assistant_message(
            content="".join(self._content),
            tool_calls=calls,
            usage=self._usage,
            metadata=metadata,
        )

    async def aggregate(
        self,
        stream: AsyncIterable[StreamChunk],
        on_chunk: ChunkCallback | None = None,
    ) -> Message:
        """
        Drive *stream* to its completion marker and return the message.

        *on_chunk* is awaited for each chunk before it is merged.  Reading
        stops at the completion marker.
        """
        async for chunk in stream:
            if on_chunk is not None:
                await on_chunk(chunk)
            self.feed(chunk)
            if self._completed:
                break
        return self.finish()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _feed_tool_delta(self, delta: RawToolDelta) -> None:
        buf = self._buf.setdefault(
            delta.call_index, {"id": None, "name": "", "args": ""}
        )

        if delta.id and not buf["id"]:
            buf["id"] = delta.id

        if delta.name_delta:
            buf["name"] += delta.name_delta

        if delta.args_delta:
            buf["args"] += delta.args_delta
