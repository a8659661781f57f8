"""Hook bus and built-in observers."""

from agentrun.hooks.analytics import ExecutionAnalyticsHook, ExecutionStats
from agentrun.hooks.bus import HOOK_POINTS, Hook, HookBus
from agentrun.hooks.limits import RequestLimitHook
from agentrun.hooks.logging import LoggingHook

__all__ = [
    "HOOK_POINTS",
    "ExecutionAnalyticsHook",
    "ExecutionStats",
    "Hook",
    "HookBus",
    "LoggingHook",
    "RequestLimitHook",
]
