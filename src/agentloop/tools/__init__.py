"""
Tools module: the contract tools implement and the registry sessions use.
"""

from .base import BaseTool, Tool, ToolContext, ToolDefinition, ToolOutput, ToolParameter, truncate_output
from .registry import ToolRegistry, is_tool_allowed
from .shell_tool import ShellConfig, ShellExecutor, create_shell_tools

__all__ = [
    "BaseTool",
    "Tool",
    "ToolContext",
    "ToolDefinition",
    "ToolOutput",
    "ToolParameter",
    "truncate_output",
    "ToolRegistry",
    "is_tool_allowed",
    "ShellConfig",
    "ShellExecutor",
    "create_shell_tools",
]
