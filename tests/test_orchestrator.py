"""Tests for the orchestrator core."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json

import pytest

from agentrun.config import AgentConfig
from agentrun.errors import (
    IncompleteStream,
    InvalidState,
    IterationLimitExceeded,
    OrchestratorBusy,
    ProviderError,
    RunCancelled,
)
from agentrun.hooks import Hook, RequestLimitHook
from agentrun.llm.registry import ProviderRegistry
from agentrun.llm.retry import RetryPolicy
from agentrun.llm.types import ToolCall, Usage, assistant_message
from agentrun.orchestrator import CancellationToken, Orchestrator, RunState
from agentrun.session.history import ConversationHistory
from agentrun.tools.base import FunctionTool
from agentrun.tools.registry import ToolRegistry
from tests.mock_providers import (
    FlakyProvider,
    LoopingProvider,
    ScriptedProvider,
    TruncatedStreamProvider,
    message_to_chunks,
    text_response,
    tool_call_response,
    transient_error,
)
from tests.mock_tools import AddTool, EchoTool, SlowTool

FAST_RETRY = dict(base_delay=0.0, jitter=0.0)


class RecordingHook(Hook):
    """Records every lifecycle event as a tuple."""

    def __init__(self):
        self.events = []

    def before_run(self, ctx, user_input):
        self.events.append(("before_run", user_input))

    def after_run(self, ctx, outcome):
        self.events.append(("after_run", outcome.status, type(outcome.error).__name__ if outcome.error else None))

    def before_provider_call(self, ctx, messages):
        self.events.append(("before_provider_call", len(messages)))

    def after_provider_call(self, ctx, response):
        self.events.append(("after_provider_call", len(response.tool_calls or ())))

    def before_tool_call(self, ctx, call):
        self.events.append(("before_tool_call", call.name))

    def after_tool_call(self, ctx, call, result, error):
        self.events.append(("after_tool_call", call.name, error.code if error else None))

    def names(self):
        return [e[0] for e in self.events]

    def count(self, name):
        return self.names().count(name)


class GatedProvider(ScriptedProvider):
    """Blocks inside ``complete`` until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def complete(self, messages, tools=None, options=None):
        self.entered.set()
        await self.release.wait()
        return await super().complete(messages, tools, options)


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register(AddTool())
    reg.register(EchoTool())
    return reg


@pytest.fixture
def recorder():
    return RecordingHook()


def _make_orchestrator(provider, registry=None, hooks=None, max_attempts=3, **kwargs):
    providers = ProviderRegistry()
    providers.register("mock", provider, model="mock-model")
    return Orchestrator(
        providers,
        registry if registry is not None else ToolRegistry(),
        hooks or [],
        retry=RetryPolicy(max_attempts=max_attempts, **FAST_RETRY),
        **kwargs,
    )


def _add_script():
    return [
        tool_call_response(("add", {"a": 5, "b": 7}, "call_1"), usage=Usage(10, 5, 15)),
        text_response("12", usage=Usage(20, 1, 21)),
    ]


async def _collect(orch, user_input, **kwargs):
    return [chunk async for chunk in orch.run_stream(user_input, **kwargs)]


class TestAddScenario:
    async def test_add_5_and_7(self, registry, recorder):
        provider = ScriptedProvider(_add_script())
        orch = _make_orchestrator(provider, registry, [recorder])

        final = await orch.run("Add 5 and 7")

        assert final.role == "assistant"
        assert final.content == "12"
        history = orch.history.list()
        assert [m.role for m in history] == ["user", "assistant", "tool", "assistant"]
        assert history[1].tool_calls[0] == ToolCall(id="call_1", name="add", arguments='{"a": 5, "b": 7}')
        assert history[2].tool_call_id == "call_1"
        assert history[2].content == "12"
        assert provider.call_count == 2
        # second call sees the tool result
        assert [m.role for m in provider.calls[1]] == ["user", "assistant", "tool"]
        assert orch.state is RunState.IDLE

    async def test_hook_sequence(self, registry, recorder):
        orch = _make_orchestrator(ScriptedProvider(_add_script()), registry, [recorder])
        await orch.run("Add 5 and 7")
        assert recorder.names() == [
            "before_run",
            "before_provider_call",
            "after_provider_call",
            "before_tool_call",
            "after_tool_call",
            "before_provider_call",
            "after_provider_call",
            "after_run",
        ]
        assert recorder.events[-1] == ("after_run", RunState.DONE, None)

    async def test_tool_schema_sent(self, registry):
        provider = ScriptedProvider(_add_script())
        orch = _make_orchestrator(provider, registry)
        await orch.run("Add 5 and 7")
        assert [t["name"] for t in provider.last_tools] == ["add", "echo"]
        assert provider.last_options.model == "mock-model"

    async def test_tools_withheld_when_unsupported(self, registry):
        provider = ScriptedProvider([text_response("no tools")], tools=False)
        orch = _make_orchestrator(provider, registry)
        await orch.run("hi")
        assert provider.last_tools is None

    async def test_iteration_recorded_in_metadata(self, registry):
        orch = _make_orchestrator(ScriptedProvider(_add_script()), registry)
        final = await orch.run("Add 5 and 7")
        assert final.metadata["iteration"] == 2

    async def test_stats(self, registry):
        orch = _make_orchestrator(ScriptedProvider(_add_script()), registry)
        await orch.run("Add 5 and 7")
        assert orch.stats.runs == 1
        assert orch.stats.completed == 1
        assert orch.stats.provider_calls == 2
        assert orch.stats.tool_calls == 1
        assert orch.stats.usage == Usage(30, 6, 36)


class TestStreamingEquivalence:
    async def test_streaming_run_matches_complete(self, registry):
        plain = _make_orchestrator(ScriptedProvider(_add_script()), registry)
        streamed = _make_orchestrator(ScriptedProvider(_add_script()), registry, stream=True)

        a = await plain.run("Add 5 and 7")
        b = await streamed.run("Add 5 and 7")

        assert a.content == b.content
        strip = lambda h: [(m.role, m.content, m.tool_calls, m.tool_call_id) for m in h.list()]
        assert strip(plain.history) == strip(streamed.history)
        assert b.metadata["stream_completed"] is True

    async def test_run_stream_forwards_chunks(self, registry):
        orch = _make_orchestrator(ScriptedProvider(_add_script()), registry)
        chunks = await _collect(orch, "Add 5 and 7")
        assert sum(1 for c in chunks if c.done) == 2
        assert chunks[-1].done
        assert "".join(c.delta for c in chunks) == "12"
        assert orch.history.list()[-1].content == "12"
        assert not orch.busy

    async def test_run_stream_falls_back_to_complete(self):
        provider = ScriptedProvider([text_response("whole answer")], streaming=False)
        orch = _make_orchestrator(provider)
        chunks = await _collect(orch, "hi")
        assert len(chunks) == 1
        assert chunks[0].done
        assert chunks[0].delta == "whole answer"

    async def test_run_stream_raises_after_chunks(self):
        orch = _make_orchestrator(ScriptedProvider([ProviderError("bad request", provider="mock")]))
        with pytest.raises(ProviderError, match="bad request"):
            await _collect(orch, "hi")
        assert not orch.busy

    async def test_closing_stream_early_cancels_run(self, registry, recorder):
        orch = _make_orchestrator(ScriptedProvider(_add_script()), registry, [recorder])
        async with contextlib.aclosing(orch.run_stream("Add 5 and 7")) as stream:
            async for _chunk in stream:
                break
        assert not orch.busy
        assert orch.state is RunState.IDLE
        assert recorder.count("after_run") == 1
        assert orch.last_outcome.status is RunState.CANCELLED

    async def test_tool_rounds_without_backend_ids(self, registry):
        class NoIdProvider(ScriptedProvider):
            async def stream(self, messages, tools=None, options=None):
                message = self._next(messages, tools, options)
                for chunk in message_to_chunks(message):
                    if chunk.tool_deltas:
                        chunk = dataclasses.replace(
                            chunk,
                            tool_deltas=[dataclasses.replace(d, id=None) for d in chunk.tool_deltas],
                        )
                    yield chunk

        provider = NoIdProvider([
            tool_call_response(("echo", {"message": "one"}, "")),
            tool_call_response(("echo", {"message": "two"}, "")),
            text_response("done"),
        ])
        orch = _make_orchestrator(provider, registry, stream=True)

        final = await orch.run("go")

        assert final.content == "done"
        call_ids = [m.tool_calls[0].id for m in orch.history.by_role("assistant") if m.tool_calls]
        assert len(set(call_ids)) == 2
        assert [m.tool_call_id for m in orch.history.by_role("tool")] == call_ids

    async def test_incomplete_stream_fails_without_retry(self):
        provider = TruncatedStreamProvider([text_response("cut off"), text_response("unused")])
        orch = _make_orchestrator(provider, stream=True)
        with pytest.raises(IncompleteStream):
            await orch.run("hi")
        assert provider.call_count == 1

    async def test_stream_retried_before_first_chunk(self):
        provider = ScriptedProvider([transient_error(), text_response("ok")])
        orch = _make_orchestrator(provider, stream=True)
        final = await orch.run("hi")
        assert final.content == "ok"
        assert provider.call_count == 2


class TestRetry:
    async def test_two_transient_failures_within_bound_of_three(self, recorder):
        provider = FlakyProvider(failures=2)
        orch = _make_orchestrator(provider, hooks=[recorder], max_attempts=3)
        final = await orch.run("hi")
        assert final.content == "recovered"
        assert provider.call_count == 3
        assert recorder.count("before_provider_call") == 1

    async def test_two_transient_failures_exceed_bound_of_two(self, recorder):
        provider = FlakyProvider(failures=2)
        orch = _make_orchestrator(provider, hooks=[recorder], max_attempts=2)
        with pytest.raises(ProviderError) as exc_info:
            await orch.run("hi")
        assert exc_info.value.transient
        assert exc_info.value.provider == "mock"
        assert provider.call_count == 2
        assert recorder.events[-1] == ("after_run", RunState.FAILED, "ProviderError")
        assert [m.role for m in orch.history.list()] == ["user"]
        assert orch.stats.failed == 1

    async def test_permanent_error_not_retried(self):
        provider = ScriptedProvider([ProviderError("401 Unauthorized", provider="mock")])
        orch = _make_orchestrator(provider, max_attempts=5)
        with pytest.raises(ProviderError, match="401"):
            await orch.run("hi")
        assert provider.call_count == 1

    async def test_unexpected_exception_wrapped(self):
        provider = ScriptedProvider([RuntimeError("kaboom")])
        orch = _make_orchestrator(provider)
        with pytest.raises(ProviderError) as exc_info:
            await orch.run("hi")
        assert exc_info.value.provider == "mock"
        assert not exc_info.value.transient
        assert isinstance(exc_info.value.cause, RuntimeError)


class TestToolFailuresAreRecoverable:
    async def test_unknown_tool_fed_back(self, registry, recorder):
        provider = ScriptedProvider([
            tool_call_response(("ghost", {}, "c1")),
            text_response("That tool does not exist."),
        ])
        orch = _make_orchestrator(provider, registry, [recorder])
        final = await orch.run("use ghost")
        assert final.content == "That tool does not exist."
        tool_msg = orch.history.list()[2]
        assert json.loads(tool_msg.content)["error"]["code"] == "unknown_tool"
        assert ("after_tool_call", "ghost", "unknown_tool") in recorder.events

    async def test_invalid_arguments_fed_back(self, registry):
        provider = ScriptedProvider([
            tool_call_response(("add", {"a": "five"}, "c1")),
            text_response("Retrying is up to you."),
        ])
        orch = _make_orchestrator(provider, registry)
        await orch.run("add")
        body = json.loads(orch.history.list()[2].content)
        assert body["error"]["code"] == "invalid_arguments"
        assert len(body["error"]["violations"]) == 2

    async def test_malformed_json_fed_back(self, registry):
        provider = ScriptedProvider([
            assistant_message(tool_calls=[ToolCall(id="c1", name="add", arguments='{"a": 5,')]),
            text_response("ok"),
        ])
        orch = _make_orchestrator(provider, registry, stream=True)
        await orch.run("add")
        tool_msg = orch.history.list()[2]
        assert tool_msg.metadata["error_code"] == "invalid_arguments"
        assert orch.history.list()[1].metadata["malformed_tool_calls"] == ["c1"]

    async def test_handler_error_fed_back(self):
        reg = ToolRegistry()
        reg.register(FunctionTool("crash", "Crashes.", {}, lambda: 1 / 0))
        provider = ScriptedProvider([tool_call_response(("crash", {}, "c1")), text_response("oh no")])
        orch = _make_orchestrator(provider, reg)
        await orch.run("crash")
        body = json.loads(orch.history.list()[2].content)
        assert body["error"]["code"] == "handler_error"
        assert "ZeroDivisionError" in body["error"]["message"]
        assert orch.stats.tool_errors == 1


class TestLoopBound:
    async def test_iteration_limit(self, registry, recorder):
        provider = LoopingProvider()
        orch = _make_orchestrator(provider, registry, [recorder], max_iterations=3)
        with pytest.raises(IterationLimitExceeded) as exc_info:
            await orch.run("loop forever")
        assert exc_info.value.max_iterations == 3
        assert provider.call_count == 3
        assert recorder.count("after_run") == 1
        assert recorder.events[-1][1] is RunState.FAILED
        assert orch.history.list()[-1].role == "tool"
        assert orch.state is RunState.IDLE

    async def test_default_bound_is_ten(self, registry):
        provider = LoopingProvider()
        orch = _make_orchestrator(provider, registry)
        with pytest.raises(IterationLimitExceeded):
            await orch.run("loop forever")
        assert provider.call_count == 10


class TestCancellation:
    async def test_cancel_from_tool_stops_further_calls(self, registry, recorder):
        token = CancellationToken()

        async def stop():
            token.cancel("user pressed stop")
            return "stopping"

        registry.register(FunctionTool("stop", "Stops the run.", {}, stop))
        provider = ScriptedProvider([
            tool_call_response([("stop", {}, "c1"), ("echo", {"message": "x"}, "c2")]),
            text_response("never sent"),
        ])
        orch = _make_orchestrator(provider, registry, [recorder])

        with pytest.raises(RunCancelled, match="user pressed stop"):
            await orch.run("go", cancel_token=token)

        assert provider.call_count == 1
        assert [m.role for m in orch.history.list()] == ["user", "assistant"]
        assert recorder.count("before_tool_call") == 1
        assert recorder.count("after_tool_call") == 1
        assert recorder.events[-1] == ("after_run", RunState.CANCELLED, "RunCancelled")
        assert orch.stats.cancelled == 1
        assert orch.state is RunState.IDLE

    async def test_pre_cancelled_token(self):
        token = CancellationToken()
        token.cancel()
        provider = ScriptedProvider()
        orch = _make_orchestrator(provider)
        with pytest.raises(RunCancelled):
            await orch.run("hi", cancel_token=token)
        assert provider.call_count == 0
        assert len(orch.history) == 0

    async def test_pre_cancelled_token_skips_before_run(self, recorder):
        token = CancellationToken()
        token.cancel("not wanted")
        orch = _make_orchestrator(ScriptedProvider(), hooks=[recorder])
        with pytest.raises(RunCancelled, match="not wanted"):
            await orch.run("hi", cancel_token=token)
        assert recorder.names() == ["after_run"]

    async def test_parallel_batch_not_appended_after_cancel(self, registry):
        token = CancellationToken()

        async def stop():
            token.cancel("stop")
            return "stopping"

        registry.register(FunctionTool("stop", "Stops the run.", {}, stop))
        provider = ScriptedProvider([
            tool_call_response([("stop", {}, "c1"), ("echo", {"message": "x"}, "c2")]),
            text_response("never sent"),
        ])
        orch = _make_orchestrator(provider, registry, parallel_tools=True)

        with pytest.raises(RunCancelled):
            await orch.run("go", cancel_token=token)

        assert [m.role for m in orch.history.list()] == ["user", "assistant"]
        assert orch.history.pending_tool_calls()

    async def test_response_after_cancel_not_appended(self):
        token = CancellationToken()

        class CancellingProvider(ScriptedProvider):
            async def complete(self, messages, tools=None, options=None):
                token.cancel("mid-call")
                return await super().complete(messages, tools, options)

        orch = _make_orchestrator(CancellingProvider([text_response("late")]))
        with pytest.raises(RunCancelled, match="mid-call"):
            await orch.run("hi", cancel_token=token)
        assert [m.role for m in orch.history.list()] == ["user"]

    async def test_hook_cancels_before_provider_call(self, registry, recorder):
        provider = ScriptedProvider(_add_script())
        orch = _make_orchestrator(provider, registry, [RequestLimitHook(max_requests=1), recorder])
        with pytest.raises(RunCancelled, match="Request limit"):
            await orch.run("Add 5 and 7")
        assert provider.call_count == 1
        assert recorder.events[-1][1] is RunState.CANCELLED

    async def test_hook_cancels_before_run(self, recorder):
        class Gate(Hook):
            def before_run(self, ctx, user_input):
                raise RunCancelled("blocked")

        provider = ScriptedProvider()
        orch = _make_orchestrator(provider, hooks=[Gate(), recorder])
        with pytest.raises(RunCancelled, match="blocked"):
            await orch.run("hi")
        assert provider.call_count == 0
        assert len(orch.history) == 0
        assert recorder.names() == ["after_run"]


class TestConcurrency:
    async def test_second_run_rejected_while_busy(self, recorder):
        provider = GatedProvider([text_response("first")])
        orch = _make_orchestrator(provider, hooks=[recorder])

        task = asyncio.create_task(orch.run("one"))
        await provider.entered.wait()
        assert orch.state is RunState.AWAITING_MODEL

        with pytest.raises(OrchestratorBusy):
            await orch.run("two")
        assert recorder.count("before_run") == 1

        provider.release.set()
        final = await task
        assert final.content == "first"
        assert [m.content for m in orch.history.list()] == ["one", "first"]
        assert recorder.count("after_run") == 1

    async def test_switching_provider_mid_run_rejected(self):
        provider = GatedProvider([text_response("first")])
        orch = _make_orchestrator(provider)
        orch.providers.register("other", ScriptedProvider([text_response("second")]))

        task = asyncio.create_task(orch.run("one"))
        await provider.entered.wait()
        with pytest.raises(InvalidState):
            orch.set_current_provider("other")
        with pytest.raises(InvalidState):
            orch.set_current_model("bigger")
        with pytest.raises(InvalidState):
            orch.reset()
        provider.release.set()
        await task

        orch.set_current_provider("other", model="other-model")
        final = await orch.run("two")
        assert final.content == "second"
        assert [m.content for m in orch.history.list()] == ["one", "first", "two", "second"]

    async def test_tools_locked_during_run(self, registry):
        errors = []

        class Registrar(Hook):
            def before_provider_call(self, ctx, messages):
                try:
                    ctx.tools.register(SlowTool())
                except InvalidState as e:
                    errors.append(e)

        orch = _make_orchestrator(ScriptedProvider(), registry, [Registrar()])
        await orch.run("hi")
        assert len(errors) == 1
        orch.tools.register(SlowTool())

    async def test_parallel_tools_preserve_call_order(self):
        log = []
        reg = ToolRegistry()
        reg.register(SlowTool(log=log))
        calls = [
            ("slow", {"label": "A", "delay": 0.05}, "c1"),
            ("slow", {"label": "B", "delay": 0.0}, "c2"),
        ]
        provider = ScriptedProvider([tool_call_response(calls), text_response("done")])
        orch = _make_orchestrator(provider, reg, parallel_tools=True)
        await orch.run("go")

        assert log == [("start", "A"), ("start", "B"), ("end", "B"), ("end", "A")]
        results = orch.history.by_role("tool")
        assert [m.tool_call_id for m in results] == ["c1", "c2"]
        assert [json.loads(m.content)["label"] for m in results] == ["A", "B"]

    async def test_sequential_tools_by_default(self):
        log = []
        reg = ToolRegistry()
        reg.register(SlowTool(log=log))
        calls = [
            ("slow", {"label": "A", "delay": 0.01}, "c1"),
            ("slow", {"label": "B", "delay": 0.0}, "c2"),
        ]
        provider = ScriptedProvider([tool_call_response(calls), text_response("done")])
        orch = _make_orchestrator(provider, reg)
        await orch.run("go")
        assert log == [("start", "A"), ("end", "A"), ("start", "B"), ("end", "B")]

    async def test_tool_timeout(self):
        reg = ToolRegistry()
        reg.register(SlowTool())
        provider = ScriptedProvider([
            tool_call_response(("slow", {"label": "A", "delay": 1.0}, "c1")),
            text_response("too slow"),
        ])
        orch = _make_orchestrator(provider, reg, tool_timeout=0.01)
        await orch.run("go")
        assert orch.history.list()[2].metadata["error_code"] == "tool_timeout"


class TestHooksIsolation:
    async def test_failing_hook_does_not_break_run(self, registry, recorder):
        class Broken(Hook):
            def after_provider_call(self, ctx, response):
                raise RuntimeError("observer bug")

        orch = _make_orchestrator(ScriptedProvider(_add_script()), registry, [Broken(), recorder])
        final = await orch.run("Add 5 and 7")
        assert final.content == "12"
        assert recorder.count("after_provider_call") == 2

    async def test_after_run_once_per_run(self, registry, recorder):
        provider = ScriptedProvider([text_response("a"), ProviderError("nope"), text_response("c")])
        orch = _make_orchestrator(provider, registry, [recorder])
        await orch.run("1")
        with pytest.raises(ProviderError):
            await orch.run("2")
        await orch.run("3")
        assert recorder.count("before_run") == 3
        assert recorder.count("after_run") == 3


class TestConversationManagement:
    async def test_system_prompt_seeded_and_sent(self):
        provider = ScriptedProvider()
        orch = _make_orchestrator(provider, system_prompt="You are terse.")
        await orch.run("hi")
        assert provider.calls[0][0].role == "system"
        assert provider.calls[0][0].content == "You are terse."

    async def test_add_system_message_deduplicated(self):
        orch = _make_orchestrator(ScriptedProvider(), system_prompt=["A", "B"])
        assert orch.add_system_message("A") is False
        assert orch.add_system_message("C") is True
        assert [m.content for m in orch.history.by_role("system")] == ["A", "B", "C"]

    async def test_reset_keeps_system(self):
        orch = _make_orchestrator(ScriptedProvider(), system_prompt="sys")
        await orch.run("hi")
        orch.reset()
        assert [m.role for m in orch.history.list()] == ["system"]
        orch.reset(preserve_system=False)
        assert len(orch.history) == 0

    async def test_history_evicted_between_runs(self):
        provider = ScriptedProvider([text_response(str(i)) for i in range(3)])
        orch = _make_orchestrator(
            provider,
            history=ConversationHistory(max_entries=3),
            system_prompt="sys",
        )
        for i in range(3):
            await orch.run(f"q{i}")
        assert [m.content for m in orch.history.list()] == ["sys", "q2", "2"]

    async def test_no_provider_configured(self):
        orch = Orchestrator(ProviderRegistry())
        with pytest.raises(Exception) as exc_info:
            await orch.run("hi")
        assert exc_info.value.code == "configuration_error"
        assert not orch.busy


class TestFromConfig:
    async def test_builds_from_config(self):
        cfg = AgentConfig()
        cfg.run.system_prompt = "Be brief."
        cfg.run.max_iterations = 4
        cfg.retry.max_attempts = 1
        cfg.history.max_entries = 50
        providers = ProviderRegistry()
        provider = ScriptedProvider([text_response("hello")])
        providers.register("mock", provider)

        orch = Orchestrator.from_config(cfg, providers, tools=[AddTool()])

        assert orch.max_iterations == 4
        assert orch.retry.max_attempts == 1
        assert orch.history.max_entries == 50
        assert "add" in orch.tools
        assert orch.options.model == cfg.llm.model
        await orch.run("hi")
        assert provider.last_options.model == cfg.llm.model

    async def test_reset_follows_history_config(self):
        cfg = AgentConfig()
        cfg.run.system_prompt = "sys"
        cfg.history.preserve_system_on_reset = False
        providers = ProviderRegistry()
        providers.register("mock", ScriptedProvider())

        orch = Orchestrator.from_config(cfg, providers)
        await orch.run("hi")
        orch.reset()

        assert len(orch.history) == 0
