"""
Orchestrator core -- the loop that turns one user input into a final answer.

The orchestrator:
1. Appends the user message to the conversation history
2. Calls the current provider with the history and the tool declarations
3. Resolves every requested tool call through the tool registry
4. Loops until the model answers without tool calls (or a bound is hit)
5. Notifies hook observers at every step

Streaming and non-streaming calls share one loop: streamed output is
reduced to a single assistant message by the ``StreamAggregator`` before
any decision is taken on it.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Sequence

from agentrun.errors import (
    InvalidState,
    InvariantViolation,
    IterationLimitExceeded,
    OrchestratorBusy,
    RunCancelled,
    ToolError,
)
from agentrun.hooks.bus import HookBus
from agentrun.llm.providers.base import CallOptions
from agentrun.llm.registry import ProviderDescriptor, ProviderRegistry
from agentrun.llm.retry import RetryPolicy, call_with_retry
from agentrun.llm.stream_aggregator import StreamAggregator
from agentrun.llm.types import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    Message,
    RawToolDelta,
    StreamChunk,
    ToolCall,
    Usage,
    system_message,
    user_message,
)
from agentrun.orchestrator.context import (
    CancellationToken,
    ExecutionContext,
    RunOutcome,
    RunState,
)
from agentrun.session.history import ConversationHistory
from agentrun.tools.base import Tool
from agentrun.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from agentrun.config import AgentConfig

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], Awaitable[None]]

_END = object()


@dataclass
class RunStats:
    """Cumulative counters over the orchestrator's lifetime."""

    runs: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    provider_calls: int = 0
    tool_calls: int = 0
    tool_errors: int = 0
    usage: Usage = field(default_factory=Usage)


class Orchestrator:
    """
    Execution engine for one conversation.

    Parameters
    ----------
    providers : ProviderRegistry
        Registered model backends; the current one serves every call.
    tools : ToolRegistry
        Tools advertised to the model.
    hooks : HookBus or list
        Lifecycle observers, invoked in order.
    history : ConversationHistory
        Conversation record.  A fresh unbounded one is created if omitted.
    system_prompt : str or sequence of str
        System messages seeded into the history at construction.
    retry : RetryPolicy
        Retry and timeout policy for provider calls.
    max_iterations : int
        Max model calls per run before ``IterationLimitExceeded``.
    tool_timeout : float
        Max seconds for a single tool execution.  ``None`` disables it.
    parallel_tools : bool
        Run the tool calls of one response concurrently.  Results are still
        appended in call order.
    stream : bool
        Make ``run`` use the provider's streaming call internally.
    options : CallOptions
        Generation settings sent with each call.
    preserve_system_on_reset : bool
        Default for ``reset``: keep system messages when clearing.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        tools: ToolRegistry | None = None,
        hooks: HookBus | Sequence[Any] | None = None,
        *,
        history: ConversationHistory | None = None,
        system_prompt: str | Sequence[str] | None = None,
        retry: RetryPolicy | None = None,
        max_iterations: int = 10,
        tool_timeout: float | None = 30.0,
        parallel_tools: bool = False,
        stream: bool = False,
        options: CallOptions | None = None,
        preserve_system_on_reset: bool = True,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.providers = providers
        self.tools = tools if tools is not None else ToolRegistry()
        self.hooks = hooks if isinstance(hooks, HookBus) else HookBus(list(hooks or []))
        self.history = history if history is not None else ConversationHistory()
        self.retry = retry or RetryPolicy()
        self.max_iterations = max_iterations
        self.tool_timeout = tool_timeout
        self.parallel_tools = parallel_tools
        self.stream = stream
        self.options = options or CallOptions()
        self.preserve_system_on_reset = preserve_system_on_reset
        self.stats = RunStats()
        self.last_outcome: RunOutcome | None = None
        self._state = RunState.IDLE
        self._busy = False

        prompts = [system_prompt] if isinstance(system_prompt, str) else list(system_prompt or [])
        for text in prompts:
            if text:
                self._seed_system(text)

    @classmethod
    def from_config(
        cls,
        cfg: AgentConfig,
        providers: ProviderRegistry | None = None,
        tools: Sequence[Tool] | ToolRegistry | None = None,
        hooks: HookBus | Sequence[Any] | None = None,
    ) -> Orchestrator:
        """
        Build an orchestrator from an ``AgentConfig``.

        Without *providers*, one provider is created from ``cfg.llm`` and
        registered under ``cfg.llm.name``.
        """
        from agentrun.llm.providers import create_provider

        if providers is None:
            providers = ProviderRegistry()
            providers.register(cfg.llm.name, create_provider(cfg.llm), model=cfg.llm.model)

        if isinstance(tools, ToolRegistry):
            registry = tools
        else:
            registry = ToolRegistry()
            for t in tools or []:
                registry.register(t)

        return cls(
            providers,
            registry,
            hooks,
            history=ConversationHistory(max_entries=cfg.history.max_entries),
            system_prompt=cfg.run.system_prompt,
            retry=RetryPolicy(
                max_attempts=cfg.retry.max_attempts,
                base_delay=cfg.retry.base_delay,
                max_delay=cfg.retry.max_delay,
                timeout=cfg.retry.timeout_seconds,
            ),
            max_iterations=cfg.run.max_iterations,
            tool_timeout=cfg.run.tool_timeout_seconds,
            parallel_tools=cfg.run.parallel_tools,
            stream=cfg.llm.stream,
            options=CallOptions(
                model=cfg.llm.model,
                temperature=cfg.llm.temperature,
                max_tokens=cfg.llm.max_tokens,
                extra=dict(cfg.llm.extra),
            ),
            preserve_system_on_reset=cfg.history.preserve_system_on_reset,
        )

    # ------------------------------------------------------------------
    # State and configuration
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._busy

    def _ensure_idle(self, op: str) -> None:
        if self._busy or self._state is not RunState.IDLE:
            raise InvalidState(f"Cannot {op} while a run is in progress ({self._state.value})")

    def set_current_provider(self, name: str, model: str | None = None) -> None:
        """Switch provider (and optionally model); history is kept as is."""
        self._ensure_idle("switch provider")
        self.providers.set_current(name, model)

    def set_current_model(self, model: str) -> None:
        self._ensure_idle("switch model")
        self.providers.set_model(model)

    def add_system_message(self, text: str) -> bool:
        """Append a system message unless an identical one exists."""
        self._ensure_idle("add a system message")
        return self._seed_system(text)

    def _seed_system(self, text: str) -> bool:
        if any(m.content == text for m in self.history.by_role(ROLE_SYSTEM)):
            return False
        self.history.append(system_message(text))
        return True

    def reset(self, preserve_system: bool | None = None) -> None:
        """Clear the conversation; system messages kept per ``preserve_system_on_reset``."""
        self._ensure_idle("reset")
        if preserve_system is None:
            preserve_system = self.preserve_system_on_reset
        self.history.clear(preserve_system=preserve_system)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self, user_input: str, *, cancel_token: CancellationToken | None = None
    ) -> Message:
        """
        Run the loop for one user input and return the final assistant message.

        Raises the fatal error on failure and ``RunCancelled`` when the run
        is cancelled.  ``OrchestratorBusy`` is raised if a run is already in
        progress; in that case nothing is recorded and no hook fires.
        """
        self._acquire()
        try:
            return await self._execute(user_input, cancel_token, streaming=self.stream)
        finally:
            self._release()

    async def run_stream(
        self, user_input: str, *, cancel_token: CancellationToken | None = None
    ) -> AsyncIterator[StreamChunk]:
        """
        Run the loop, yielding provider chunks as they arrive.

        Chunks of every model call in the run are forwarded, each call
        ending with a ``done`` chunk.  Errors are raised from the iterator
        after the last chunk.  Closing the iterator early cancels the run.
        """
        self._acquire()
        queue: asyncio.Queue = asyncio.Queue()

        async def forward(chunk: StreamChunk) -> None:
            queue.put_nowait(chunk)

        async def drive() -> Message:
            try:
                return await self._execute(user_input, cancel_token, on_chunk=forward, streaming=True)
            finally:
                self._release()
                queue.put_nowait(_END)

        task = asyncio.create_task(drive())
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                yield item
            await task
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    def _acquire(self) -> None:
        if self._busy:
            raise OrchestratorBusy()
        self._busy = True

    def _release(self) -> None:
        self._busy = False
        self._state = RunState.IDLE

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _execute(
        self,
        user_input: str,
        cancel_token: CancellationToken | None,
        *,
        on_chunk: ChunkCallback | None = None,
        streaming: bool = False,
    ) -> Message:
        descriptor = self.providers.current
        ctx = ExecutionContext(
            provider_name=descriptor.name,
            model=self.providers.current_model or self.options.model,
            history=self.history,
            tools=self.tools,
            hooks=self.hooks,
            cancel_token=cancel_token or CancellationToken(),
            system_messages=tuple(self.history.by_role(ROLE_SYSTEM)),
            streaming=streaming,
        )
        self.stats.runs += 1
        logger.debug("Run %s started on %s", ctx.run_id, ctx.provider_name)

        with self.tools.locked():
            try:
                ctx.cancel_token.raise_if_cancelled()
                await self.hooks.emit("before_run", ctx, user_input, allow_cancel=True)
                ctx.cancel_token.raise_if_cancelled()
                self.history.evict_if_over_capacity()
                self.history.append(user_message(user_input))
                message = await self._loop(ctx, on_chunk, streaming)
            except (RunCancelled, asyncio.CancelledError) as e:
                error = e if isinstance(e, RunCancelled) else RunCancelled("Run task cancelled")
                self.stats.cancelled += 1
                await self._finish(ctx, RunState.CANCELLED, error=error)
                raise
            except Exception as e:
                self.stats.failed += 1
                logger.warning("Run %s failed: %s", ctx.run_id, e)
                await self._finish(ctx, RunState.FAILED, error=e)
                raise
            self.stats.completed += 1
            await self._finish(ctx, RunState.DONE, message=message)
            return message

    async def _finish(
        self,
        ctx: ExecutionContext,
        status: RunState,
        *,
        message: Message | None = None,
        error: BaseException | None = None,
    ) -> None:
        self._state = status
        outcome = RunOutcome(
            status=status,
            message=message,
            error=error,
            iterations=ctx.iteration,
            duration=ctx.elapsed,
        )
        self.last_outcome = outcome
        await self.hooks.emit("after_run", ctx, outcome)

    async def _loop(
        self,
        ctx: ExecutionContext,
        on_chunk: ChunkCallback | None,
        streaming: bool,
    ) -> Message:
        while True:
            ctx.cancel_token.raise_if_cancelled()
            if ctx.iteration >= self.max_iterations:
                raise IterationLimitExceeded(self.max_iterations, provider=ctx.provider_name)
            ctx.iteration += 1

            self._state = RunState.AWAITING_MODEL
            response = await self._call_provider(ctx, on_chunk, streaming)
            ctx.cancel_token.raise_if_cancelled()
            self.history.append(response)

            if not response.tool_calls:
                self._state = RunState.DONE
                self.history.evict_if_over_capacity()
                return response

            self._state = RunState.TOOLS_PENDING
            logger.debug(
                "Run %s iteration %d: %d tool call(s)",
                ctx.run_id, ctx.iteration, len(response.tool_calls),
            )
            await self._dispatch_tools(ctx, list(response.tool_calls))
            ctx.cancel_token.raise_if_cancelled()

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _call_provider(
        self,
        ctx: ExecutionContext,
        on_chunk: ChunkCallback | None,
        streaming: bool,
    ) -> Message:
        descriptor = self.providers.descriptor(ctx.provider_name)
        messages = list(self.history.list())
        await self.hooks.emit("before_provider_call", ctx, messages, allow_cancel=True)
        ctx.cancel_token.raise_if_cancelled()

        tools = self.tools.to_schema() if descriptor.supports_tools and len(self.tools) else None
        options = dataclasses.replace(self.options, model=ctx.model)

        if streaming and descriptor.supports_streaming:
            response = await self._stream_call(ctx, descriptor, messages, tools, options, on_chunk)
        else:
            response = await call_with_retry(
                lambda: descriptor.provider.complete(messages, tools, options),
                self.retry,
                provider=ctx.provider_name,
            )
            if streaming:
                await self._emit_chunk(ctx, _as_chunk(response), on_chunk)

        if not isinstance(response, Message) or response.role != ROLE_ASSISTANT:
            raise InvariantViolation(
                f"Provider {ctx.provider_name} returned a non-assistant message"
            )
        response = dataclasses.replace(
            response, metadata={**response.metadata, "iteration": ctx.iteration}
        )

        self.stats.provider_calls += 1
        if response.usage is not None:
            ctx.usage = ctx.usage + response.usage
            self.stats.usage = self.stats.usage + response.usage

        await self.hooks.emit("after_provider_call", ctx, response)
        return response

    async def _stream_call(
        self,
        ctx: ExecutionContext,
        descriptor: ProviderDescriptor,
        messages: list[Message],
        tools: list[dict] | None,
        options: CallOptions,
        on_chunk: ChunkCallback | None,
    ) -> Message:
        received = False

        async def forward(chunk: StreamChunk) -> None:
            nonlocal received
            received = True
            await self._emit_chunk(ctx, chunk, on_chunk)

        async def attempt() -> Message:
            stream = descriptor.provider.stream(messages, tools, options)
            try:
                return await StreamAggregator(ctx.provider_name).aggregate(stream, forward)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

        # A stream that already produced output cannot be replayed.
        return await call_with_retry(
            attempt,
            self.retry,
            provider=ctx.provider_name,
            should_retry=lambda: not received,
        )

    async def _emit_chunk(
        self, ctx: ExecutionContext, chunk: StreamChunk, on_chunk: ChunkCallback | None
    ) -> None:
        await self.hooks.emit("on_stream_chunk", ctx, chunk)
        if on_chunk is not None:
            await on_chunk(chunk)

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def _dispatch_tools(self, ctx: ExecutionContext, calls: list[ToolCall]) -> None:
        if not self.parallel_tools or len(calls) < 2:
            for call in calls:
                await self._before_tool(ctx, call)
                message, error = await self.tools.resolve(call, timeout=self.tool_timeout)
                await self._after_tool(ctx, call, message, error)
            return

        for call in calls:
            await self._before_tool(ctx, call)
        results = await asyncio.gather(
            *(self.tools.resolve(call, timeout=self.tool_timeout) for call in calls)
        )
        for call, (message, error) in zip(calls, results):
            await self._after_tool(ctx, call, message, error)

    async def _before_tool(self, ctx: ExecutionContext, call: ToolCall) -> None:
        ctx.cancel_token.raise_if_cancelled()
        await self.hooks.emit("before_tool_call", ctx, call, allow_cancel=True)
        ctx.cancel_token.raise_if_cancelled()

    async def _after_tool(
        self,
        ctx: ExecutionContext,
        call: ToolCall,
        message: Message,
        error: ToolError | None,
    ) -> None:
        ctx.tools_executed.append(call.name)
        self.stats.tool_calls += 1
        if error is not None:
            self.stats.tool_errors += 1
        await self.hooks.emit("after_tool_call", ctx, call, message, error)
        ctx.cancel_token.raise_if_cancelled()
        self.history.append(message)


def _as_chunk(message: Message) -> StreamChunk:
    """Express a complete response as a single terminal chunk."""
    deltas = [
        RawToolDelta(call_index=i, id=tc.id, name_delta=tc.name, args_delta=tc.arguments)
        for i, tc in enumerate(message.tool_calls or ())
    ]
    return StreamChunk(
        delta=message.content,
        tool_deltas=deltas or None,
        done=True,
        finish_reason=message.metadata.get("finish_reason"),
        usage=message.usage,
    )
