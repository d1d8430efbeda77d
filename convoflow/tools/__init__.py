"""Tools the reasoning loop can dispatch."""

from convoflow.tools.base import ToolContext, ToolDefinition
from convoflow.tools.registry import ToolDispatcher, create_tool_dispatcher

__all__ = ["ToolContext", "ToolDefinition", "ToolDispatcher", "create_tool_dispatcher"]
