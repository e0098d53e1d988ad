from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable

from .config import Settings
from .content import NativeEvent, NativeRequest, NativeResult


class EventStream:
    """Single-pass event iterator bound to an outbound resource.

    `aclose()` releases the resource (process, HTTP response) whether or not
    iteration ever started, and may be called more than once.
    """

    def __init__(self, events: AsyncIterator[NativeEvent], on_close: Callable[[], Awaitable[None]]) -> None:
        self._events = events
        self._on_close = on_close
        self._closed = False

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> NativeEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._events.__anext__()

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            # A generator suspended in another task cannot be closed from here;
            # releasing the resource ends it from the other side.
            if not getattr(self._events, "ag_running", False):
                await self._events.aclose()  # type: ignore[attr-defined]
        finally:
            await self._on_close()


class ExecutionBackend:
    """Runs one native request, either to completion or as an event stream.

    `open_stream` does all the work that can fail before the first event (HTTP
    status check, process spawn) so those failures surface as a normal HTTP
    error instead of a half-written stream. The returned `EventStream` is
    single-pass; closing it aborts the outbound call or terminates the process.
    """

    name: str = "backend"

    async def complete(self, request: NativeRequest) -> NativeResult:
        raise NotImplementedError

    async def open_stream(self, request: NativeRequest) -> EventStream:
        raise NotImplementedError

    async def execute(self, request: NativeRequest, *, stream: bool) -> NativeResult | EventStream:
        if stream:
            return await self.open_stream(request)
        return await self.complete(request)

    def has_credentials(self) -> bool:
        return True


def build_backend(settings: Settings) -> ExecutionBackend:
    if settings.backend == "api":
        from .claude_api import ClaudeApiBackend

        return ClaudeApiBackend(settings)
    from .claude_cli import ClaudeCliBackend

    return ClaudeCliBackend(settings)
