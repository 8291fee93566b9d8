"""
Base classes for tools.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, Union, runtime_checkable

from ..cancellation import AbortSignal
from ..llm.base import ContentBlock

if TYPE_CHECKING:
    from ..events import EventRegistry

DEFAULT_MAX_OUTPUT_LINES = 2000
DEFAULT_MAX_OUTPUT_BYTES = 50 * 1024


@dataclass
class ToolContext:
    """What a tool gets to know about the call it is serving."""

    session_id: str
    abort_signal: AbortSignal = field(default_factory=AbortSignal)
    cwd: str | None = None
    events: "EventRegistry | None" = None

    async def emit_metadata(self, tool_name: str, metadata: dict[str, Any]) -> None:
        """Publish progress metadata to the session's event registry."""
        if self.events is not None:
            await self.events.emit(
                {"session_id": self.session_id, "tool": tool_name, "metadata": metadata},
                event_type="tool_metadata",
            )


@dataclass
class ToolOutput:
    """Result from a tool execution."""

    content: Union[str, list[ContentBlock]] = ""
    is_error: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, number, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None
    items: dict[str, Any] | None = None


@runtime_checkable
class ToolDefinition(Protocol):
    """Anything the session can offer to the model and execute."""

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    async def execute(self, input: dict[str, Any], context: ToolContext) -> ToolOutput: ...


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[Union[ToolOutput, str]]]


@dataclass
class Tool:
    """
    Simple tool wrapper that can be created from a function.

    This is an alternative to the class-based BaseTool for simpler tools.
    The handler receives the tool input and the call context and may return
    a ToolOutput or a plain string.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    handler: ToolHandler
    schema: dict[str, Any] | None = None

    @property
    def input_schema(self) -> dict[str, Any]:
        if self.schema is not None:
            return self.schema
        return self.get_parameters_schema()

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop: dict[str, Any] = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default
            if param.items is not None:
                prop["items"] = param.items

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    async def execute(self, input: dict[str, Any], context: ToolContext) -> ToolOutput:
        """Execute the tool handler."""
        result = await self.handler(input, context)
        if isinstance(result, ToolOutput):
            return result
        return ToolOutput(content=str(result))


class BaseTool(ABC):
    """Base class for class-based tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the tool name."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Get the tool description."""
        pass

    @property
    @abstractmethod
    def input_schema(self) -> dict[str, Any]:
        """Get the tool input schema (JSON Schema)."""
        pass

    @abstractmethod
    async def execute(self, input: dict[str, Any], context: ToolContext) -> ToolOutput:
        """Execute the tool with given input."""
        pass


def truncate_output(
    text: str,
    max_lines: int = DEFAULT_MAX_OUTPUT_LINES,
    max_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> tuple[str, bool]:
    """Cap tool output by line count and UTF-8 size.

    Returns the possibly shortened text and whether anything was cut.
    """
    lines = text.split("\n")
    truncated = False

    if len(lines) > max_lines:
        text = "\n".join(lines[:max_lines])
        truncated = True

    encoded = text.encode("utf-8")
    if len(encoded) > max_bytes:
        text = encoded[:max_bytes].decode("utf-8", errors="ignore")
        truncated = True

    if truncated:
        text += (
            f"\n\n... (output truncated: {len(lines)} lines, "
            f"{len(encoded)} bytes; limits are {max_lines} lines / {max_bytes} bytes)"
        )
    return text, truncated
