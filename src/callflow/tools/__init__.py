"""Tool catalog, handler registry and argument parsing."""

from src.callflow.tools.arguments import parse_tool_arguments
from src.callflow.tools.catalog import CATALOG, ToolDescriptor
from src.callflow.tools.registry import RegisteredTool, ToolContext, ToolRegistry, get_registry

__all__ = [
    "CATALOG",
    "RegisteredTool",
    "ToolContext",
    "ToolDescriptor",
    "ToolRegistry",
    "get_registry",
    "parse_tool_arguments",
]
