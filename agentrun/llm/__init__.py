"""LLM subsystem -- message model, providers, retry policy, stream aggregation."""

from agentrun.llm.types import (
    Message,
    RawToolDelta,
    StreamChunk,
    ToolCall,
    Usage,
    assistant_message,
    system_message,
    tool_message,
    user_message,
)
from agentrun.llm.registry import ProviderDescriptor, ProviderRegistry
from agentrun.llm.retry import RetryPolicy, call_with_retry
from agentrun.llm.stream_aggregator import StreamAggregator

__all__ = [
    "Message",
    "ProviderDescriptor",
    "ProviderRegistry",
    "RawToolDelta",
    "RetryPolicy",
    "StreamAggregator",
    "StreamChunk",
    "ToolCall",
    "Usage",
    "assistant_message",
    "call_with_retry",
    "system_message",
    "tool_message",
    "user_message",
]
