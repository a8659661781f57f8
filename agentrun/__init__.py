"""agentrun -- multi-provider AI-agent execution engine."""

from agentrun.config import AgentConfig, load_config
from agentrun.errors import AgentError
from agentrun.hooks import Hook, HookBus
from agentrun.llm import Message, ProviderRegistry, RetryPolicy
from agentrun.orchestrator import CancellationToken, Orchestrator, RunState
from agentrun.session import ConversationHistory
from agentrun.tools import FunctionTool, Tool, ToolRegistry, function_tool

__version__ = "0.1.0"

__all__ = [
    "AgentConfig",
    "AgentError",
    "CancellationToken",
    "ConversationHistory",
    "FunctionTool",
    "Hook",
    "HookBus",
    "Message",
    "Orchestrator",
    "ProviderRegistry",
    "RetryPolicy",
    "RunState",
    "Tool",
    "ToolRegistry",
    "function_tool",
    "load_config",
]
