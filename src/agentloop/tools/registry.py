"""
Tool registry for managing available tools.
"""

import fnmatch
from typing import Any, Iterable, Union

import structlog

from ..errors import AbortError, ToolExecutionError, ToolNotFoundError
from .base import ToolContext, ToolDefinition, ToolOutput

logger = structlog.get_logger()

AllowedTools = Union[list[str], dict[str, list[str]]]


def _matches_any(name: str, patterns: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch.fnmatchcase(lowered, p.lower()) for p in patterns)


def is_tool_allowed(name: str, allowed: AllowedTools | None) -> bool:
    """Apply an allow list or an ``{"allow": [...], "deny": [...]}`` filter.

    Patterns may use shell wildcards. Deny wins over allow; an empty or
    missing allow list allows everything not denied.
    """
    if allowed is None:
        return True
    if isinstance(allowed, dict):
        if _matches_any(name, allowed.get("deny") or []):
            return False
        allow = allowed.get("allow") or []
        return not allow or _matches_any(name, allow)
    return _matches_any(name, allowed)


class ToolRegistry:
    """Registry for managing tools."""

    def __init__(self, tools: Iterable[ToolDefinition] | None = None):
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool
        logger.debug("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.debug("Tool unregistered", tool_name=name)

    def get(self, name: str) -> ToolDefinition | None:
        """Get a tool by name, falling back to a case-insensitive match."""
        tool = self._tools.get(name)
        if tool is not None:
            return tool
        lowered = name.lower()
        for registered, candidate in self._tools.items():
            if registered.lower() == lowered:
                return candidate
        return None

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tools, in registration order, for the model."""
        return list(self._tools.values())

    def filter(self, allowed: AllowedTools | None) -> "ToolRegistry":
        """Return a new registry holding only the tools ``allowed`` permits."""
        return ToolRegistry(t for t in self._tools.values() if is_tool_allowed(t.name, allowed))

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    async def execute(self, name: str, input: dict[str, Any], context: ToolContext) -> ToolOutput:
        """Execute a tool by name.

        Raises ToolNotFoundError for unknown tools and ToolExecutionError when
        the tool itself fails. AbortError passes through untouched.
        """
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name, self.list_tools())

        try:
            logger.info("Executing tool", tool_name=tool.name, session_id=context.session_id)
            result = await tool.execute(input, context)
            logger.info("Tool executed", tool_name=tool.name, is_error=result.is_error)
            return result
        except AbortError:
            raise
        except Exception as e:
            logger.error("Tool execution error", tool_name=tool.name, error=str(e))
            raise ToolExecutionError(tool.name, str(e), original_error=e) from e
