"""
Line-oriented stream decoding shared by all providers.

Network chunks do not respect line boundaries, so text is buffered and only
complete lines are parsed. A partial line left at end of stream is dropped.
"""

import inspect
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Callable

import httpx
import structlog

from ..cancellation import AbortSignal
from ..errors import StreamDecodeError
from .base import StreamOptions
from .events import ContentBlockDeltaEvent, ContentBlockStopEvent, StreamBuilder, StreamEvent

logger = structlog.get_logger()


@dataclass
class ServerSentEvent:
    """One ``data:`` line, with the event name in effect when it arrived.

    ``payload`` carries an already decoded object when the source was not
    line based.
    """

    data: str
    event: str | None = None
    payload: Any = None


class LineDecoder:
    """Split a stream of text chunks into complete lines."""

    def __init__(self):
        self._buffer = ""

    def decode(self, chunk: str) -> list[str]:
        self._buffer += chunk
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> str:
        rest, self._buffer = self._buffer, ""
        return rest


class SSEParser:
    """Parse SSE lines; optionally accept bare JSON lines (NDJSON)."""

    def __init__(self, allow_bare_json: bool = False):
        self.allow_bare_json = allow_bare_json
        self._event: str | None = None

    def feed_line(self, line: str) -> ServerSentEvent | None:
        if not line.strip():
            self._event = None
            return None
        if line.startswith(":"):
            return None
        if line.startswith("event:"):
            self._event = line[6:].strip() or None
            return None
        if line.startswith("data:"):
            data = line[5:]
            if data.startswith(" "):
                data = data[1:]
            return ServerSentEvent(data=data, event=self._event)
        if line.startswith(("id:", "retry:")):
            return None
        if self.allow_bare_json and line.lstrip().startswith("{"):
            return ServerSentEvent(data=line.strip())

        logger.debug("Ignoring unrecognized stream line", line=line[:100])
        return None


async def aiter_sse(chunks: AsyncIterator[str], allow_bare_json: bool = False) -> AsyncIterator[ServerSentEvent]:
    decoder = LineDecoder()
    parser = SSEParser(allow_bare_json=allow_bare_json)

    async for chunk in chunks:
        for line in decoder.decode(chunk):
            event = parser.feed_line(line)
            if event is not None:
                yield event

    rest = decoder.flush()
    if rest.strip():
        logger.debug("Discarding partial line at end of stream", length=len(rest))


class StreamTranslator(ABC):
    """Maps one vendor's stream payloads onto canonical events."""

    def __init__(self, provider: str, model: str = ""):
        self.provider = provider
        self.builder = StreamBuilder(provider=provider, model=model)
        self.decode_errors = 0

    @property
    def finished(self) -> bool:
        return self.builder.finished

    def feed(self, event: ServerSentEvent) -> list[StreamEvent]:
        payload = event.payload if event.payload is not None else self.load_json(event.data)
        try:
            return self.translate(payload, event.event)
        except (AttributeError, TypeError, KeyError) as e:
            raise StreamDecodeError(f"Unexpected chunk shape: {e}", raw=repr(payload)[:200], original_error=e) from e

    @abstractmethod
    def translate(self, payload: Any, event_name: str | None) -> list[StreamEvent]:
        """Translate one decoded payload. Raise StreamDecodeError on bad shapes."""
        pass

    def finish(self) -> list[StreamEvent]:
        return self.builder.finish()

    def load_json(self, data: str) -> Any:
        try:
            return json.loads(data)
        except ValueError as e:
            raise StreamDecodeError("Invalid JSON in stream chunk", raw=data, original_error=e) from e

    @staticmethod
    def require_dict(value: Any, what: str) -> dict[str, Any]:
        if not isinstance(value, dict):
            raise StreamDecodeError(f"Expected an object for {what}", raw=repr(value))
        return value

    @classmethod
    def optional_dict(cls, value: Any, what: str) -> dict[str, Any]:
        """Like require_dict, but a missing value reads as an empty object."""
        if value is None:
            return {}
        return cls.require_dict(value, what)

    @staticmethod
    def require_list(value: Any, what: str) -> list[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise StreamDecodeError(f"Expected a list for {what}", raw=repr(value)[:200])
        return value

    @staticmethod
    def require_str(value: Any, what: str) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise StreamDecodeError(f"Expected a string for {what}", raw=repr(value)[:200])
        return value


async def _invoke(callback: Callable[[Any], Any] | None, value: Any) -> None:
    if callback is None:
        return
    result = callback(value)
    if inspect.isawaitable(result):
        await result


async def translate_events(
    source: AsyncIterator[ServerSentEvent],
    translator: StreamTranslator,
    options: StreamOptions | None = None,
) -> AsyncGenerator[StreamEvent, None]:
    """Run decoded lines through ``translator``, skipping undecodable ones."""
    options = options or StreamOptions()

    async def emit(events: list[StreamEvent]) -> AsyncGenerator[StreamEvent, None]:
        for event in events:
            await _invoke(options.on_event, event)
            if isinstance(event, ContentBlockDeltaEvent) and event.delta.type == "text_delta":
                await _invoke(options.on_text, event.delta.text)
            elif isinstance(event, ContentBlockStopEvent):
                while translator.builder.completed_tool_calls:
                    await _invoke(options.on_tool_use, translator.builder.completed_tool_calls.pop(0))
            yield event

    async for message in source:
        try:
            events = translator.feed(message)
        except StreamDecodeError as e:
            translator.decode_errors += 1
            logger.warning(
                "Skipping undecodable stream chunk",
                provider=translator.provider,
                error=e.message,
                raw=e.raw[:200],
                decode_errors=translator.decode_errors,
            )
            continue

        async for event in emit(events):
            yield event
        if translator.finished:
            break

    async for event in emit(translator.finish()):
        yield event


class EventStream:
    """Async iterator of canonical events that owns an open HTTP response.

    The response is released when the stream is exhausted, fails, is closed
    or is aborted. Use it as an async context manager to guarantee release
    when iteration stops early.
    """

    def __init__(
        self,
        events: AsyncGenerator[StreamEvent, None],
        translator: StreamTranslator | None = None,
        response: httpx.Response | None = None,
        signal: AbortSignal | None = None,
    ):
        self._events = events
        self._translator = translator
        self._response = response
        self._signal = signal
        self._closed = False

    @classmethod
    def from_response(
        cls,
        response: httpx.Response,
        translator: StreamTranslator,
        options: StreamOptions | None = None,
        signal: AbortSignal | None = None,
        allow_bare_json: bool = False,
    ) -> "EventStream":
        source = aiter_sse(response.aiter_text(), allow_bare_json=allow_bare_json)
        return cls(translate_events(source, translator, options), translator, response, signal)

    @classmethod
    def from_json_body(
        cls,
        response: httpx.Response,
        translator: StreamTranslator,
        options: StreamOptions | None = None,
        signal: AbortSignal | None = None,
    ) -> "EventStream":
        """Replay a non-streamed JSON object or array through ``translator``."""

        async def source() -> AsyncIterator[ServerSentEvent]:
            body = (await response.aread()).decode("utf-8", errors="replace")
            try:
                data = json.loads(body)
            except ValueError:
                translator.decode_errors += 1
                logger.warning(
                    "Skipping undecodable response body",
                    provider=translator.provider,
                    raw=body[:200],
                    decode_errors=translator.decode_errors,
                )
                return
            for item in data if isinstance(data, list) else [data]:
                yield ServerSentEvent(data="", payload=item)

        return cls(translate_events(source(), translator, options), translator, response, signal)

    @property
    def decode_errors(self) -> int:
        """Number of chunks skipped because they could not be decoded."""
        return self._translator.decode_errors if self._translator else 0

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        try:
            if self._signal is not None:
                return await self._signal.race(self._events.__anext__())
            return await self._events.__anext__()
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._events.aclose()
        finally:
            if self._response is not None:
                await self._response.aclose()

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
