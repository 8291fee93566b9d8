"""
Exception hierarchy for agentloop.

Provider failures, stream decoding problems, hook timeouts, tool failures
and session misuse each get their own type so callers can tell them apart.
"""

import json
from typing import Any


class AgentLoopError(Exception):
    """Base exception for all agentloop errors."""

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.details = details or {}


# Providers


class ProviderError(AgentLoopError):
    """Base class for provider failures."""


class ProviderConfigurationError(ProviderError):
    """A provider cannot be constructed, usually because of a missing credential."""


class ProviderNotFoundError(ProviderError):
    """No provider is registered for the requested id or model."""


class ProviderHttpError(ProviderError):
    """The vendor answered a request with a non-2xx status."""

    def __init__(self, provider: str, status_code: int, body: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.error_type, self.error_message = _parse_error_body(body)
        message = f"{provider} request failed with status {status_code}"
        if self.error_message:
            message = f"{message}: {self.error_message}"
        super().__init__(
            message,
            details={"provider": provider, "status_code": status_code},
        )

    @property
    def retryable(self) -> bool:
        """Rate limits and server errors are worth retrying."""
        return self.status_code == 429 or self.status_code >= 500


class StreamDecodeError(ProviderError):
    """A streamed chunk could not be decoded into a canonical event."""

    def __init__(self, message: str, raw: str = "", original_error: Exception | None = None):
        super().__init__(message, original_error=original_error, details={"raw": raw[:500]})
        self.raw = raw


# Hooks


class HookError(AgentLoopError):
    """Base class for hook failures."""


class HookTimeoutError(HookError):
    """A hook callback did not finish within its matcher's timeout."""

    def __init__(self, hook_name: str, timeout: float):
        self.hook_name = hook_name
        self.timeout = timeout
        super().__init__(
            f'Hook "{hook_name}" timed out after {int(timeout * 1000)}ms',
            details={"hook": hook_name, "timeout": timeout},
        )


# Tools


class ToolExecutionError(AgentLoopError):
    """A tool raised while executing."""

    def __init__(self, tool_name: str, message: str, original_error: Exception | None = None):
        super().__init__(message, original_error=original_error, details={"tool": tool_name})
        self.tool_name = tool_name


class ToolNotFoundError(ToolExecutionError):
    """The model asked for a tool that is not registered."""

    def __init__(self, tool_name: str, available: list[str]):
        self.available = available
        listing = ", ".join(available[:10])
        if len(available) > 10:
            listing += f", ... ({len(available) - 10} more)"
        super().__init__(
            tool_name,
            f"Tool '{tool_name}' not found. Available tools: {listing or '(none)'}",
        )


# Cancellation


class AbortError(AgentLoopError):
    """Work was cancelled through an AbortSignal."""

    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(f"Operation aborted: {reason}" if reason else "Operation aborted")


# Sessions


class SessionError(AgentLoopError):
    """Base class for session misuse and lookup failures."""


class SessionClosedError(SessionError):
    """The session has been closed."""


class SessionBusyError(SessionError):
    """A receive is already in progress on this session."""


class SessionStateError(SessionError):
    """The session is not in a state that allows the requested operation."""


class SessionNotFoundError(SessionError):
    """No session exists under the requested id."""


def _parse_error_body(body: str) -> tuple[str | None, str | None]:
    """Pull the vendor error type and message out of a JSON error body."""
    if not body:
        return None, None
    try:
        data = json.loads(body)
    except ValueError:
        return None, body[:200]

    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, dict):
        return None, body[:200]

    error = data.get("error", data)
    if isinstance(error, str):
        return None, error
    if not isinstance(error, dict):
        return None, body[:200]

    error_type = error.get("type") or error.get("status") or error.get("code")
    message = error.get("message")
    return (str(error_type) if error_type is not None else None), message
