"""Tool declarations, argument validation and the tool registry."""

from agentrun.tools.base import FunctionTool, Tool, function_tool, normalize_schema
from agentrun.tools.registry import ToolRegistry
from agentrun.tools.validation import ToolValidator

__all__ = [
    "FunctionTool",
    "Tool",
    "ToolRegistry",
    "ToolValidator",
    "function_tool",
    "normalize_schema",
]
