"""OpenAI `chat.completion.chunk` framing for one streamed completion.

Every stream has the same shape regardless of backend:

    role chunk -> content / tool-call chunks -> finish chunk -> [usage chunk] -> [DONE]

`StreamTranslator.relay` owns that lifecycle. A `BridgeError` raised by the
event source does not escape once the role chunk is out: if nothing was
emitted yet the client gets an `{"error": ...}` frame and finish reason
"error", otherwise the stream closes with the finish reason computed so far.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from .assembler import estimate_tokens
from .content import (
    NativeEvent,
    StopReason,
    TextDelta,
    ToolArgumentsDelta,
    ToolCallStart,
    Usage,
    UsageReport,
    finish_reason_for,
)
from .errors import BridgeError

logger = logging.getLogger("uvicorn.error")

DONE = "data: [DONE]\n\n"
PING = ": ping\n\n"


def encode_sse(obj: dict[str, Any]) -> str:
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n"


@dataclass
class StreamState:
    role_sent: bool = False
    # index -> {"id", "name", "arguments"}
    tool_calls: dict[int, dict[str, str]] = field(default_factory=dict)
    open_tool_index: int | None = None
    stop_reason: str | None = None
    content_emitted: bool = False
    text_parts: list[str] = field(default_factory=list)
    input_tokens: int | None = None
    output_tokens: int | None = None
    error: BridgeError | None = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def reported_usage(self) -> Usage | None:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return Usage(self.input_tokens or 0, self.output_tokens or 0)


class StreamTranslator:
    def __init__(
        self,
        *,
        completion_id: str,
        model: str,
        created: int,
        suppress_tool_calls: bool = False,
        include_usage: bool = False,
        prompt_text: str = "",
    ) -> None:
        self.completion_id = completion_id
        self.model = model
        self.created = created
        self.suppress_tool_calls = suppress_tool_calls
        self.include_usage = include_usage
        self.prompt_text = prompt_text
        self.state = StreamState()
        self.finish_reason: str | None = None

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> dict[str, Any]:
        return {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def role_chunk(self) -> dict[str, Any]:
        self.state.role_sent = True
        return self._chunk({"role": "assistant", "content": ""})

    def feed(self, event: NativeEvent) -> list[dict[str, Any]]:
        """Apply one native event; return the chunks it produces (possibly none)."""
        state = self.state
        if isinstance(event, TextDelta):
            if not event.text:
                return []
            state.content_emitted = True
            state.text_parts.append(event.text)
            return [self._chunk({"content": event.text})]

        if isinstance(event, ToolCallStart):
            if self.suppress_tool_calls:
                state.open_tool_index = None
                return []
            index = len(state.tool_calls)
            state.tool_calls[index] = {"id": event.id, "name": event.name, "arguments": ""}
            state.open_tool_index = index
            state.content_emitted = True
            entry = {
                "index": index,
                "id": event.id,
                "type": "function",
                "function": {"name": event.name, "arguments": ""},
            }
            return [self._chunk({"tool_calls": [entry]})]

        if isinstance(event, ToolArgumentsDelta):
            index = state.open_tool_index
            if index is None or not event.fragment:
                return []
            state.tool_calls[index]["arguments"] += event.fragment
            entry = {"index": index, "function": {"arguments": event.fragment}}
            return [self._chunk({"tool_calls": [entry]})]

        if isinstance(event, StopReason):
            state.stop_reason = event.reason
            return []

        if isinstance(event, UsageReport):
            if event.input_tokens is not None:
                state.input_tokens = event.input_tokens
            if event.output_tokens is not None:
                state.output_tokens = event.output_tokens
            return []

        return []

    def computed_finish_reason(self) -> str:
        return finish_reason_for(self.state.stop_reason, suppress_tool_calls=self.suppress_tool_calls)

    def finish_chunk(self, finish_reason: str) -> dict[str, Any]:
        self.finish_reason = finish_reason
        return self._chunk({}, finish_reason)

    def usage(self) -> dict[str, int]:
        reported = self.state.reported_usage()
        if reported is not None:
            return reported.to_openai()
        arguments = "".join(call["arguments"] for call in self.state.tool_calls.values())
        return Usage(estimate_tokens(self.prompt_text), estimate_tokens(self.state.text + arguments)).to_openai()

    def usage_chunk(self) -> dict[str, Any]:
        return {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [],
            "usage": self.usage(),
        }

    async def relay(self, events: AsyncIterator[NativeEvent]) -> AsyncIterator[str]:
        """Frame `events` as SSE. The caller owns closing `events`."""
        yield encode_sse(self.role_chunk())
        finish_reason: str | None = None
        try:
            async for event in events:
                for chunk in self.feed(event):
                    yield encode_sse(chunk)
        except BridgeError as e:
            self.state.error = e
            logger.warning("[%s] stream failed: %s", self.completion_id, e.message)
            if not self.state.content_emitted:
                yield encode_sse(e.to_body())
                finish_reason = "error"
        yield encode_sse(self.finish_chunk(finish_reason or self.computed_finish_reason()))
        if self.include_usage:
            yield encode_sse(self.usage_chunk())
        yield DONE


class _PumpError:
    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


async def with_keepalive(frames: AsyncIterator[str], interval: float) -> AsyncIterator[str]:
    """Relay `frames`, inserting `: ping` comments while the source is silent.

    The source is drained by a separate task so a slow backend never blocks the
    keepalive timer. `interval <= 0` disables pings.
    """
    queue: asyncio.Queue[str | _PumpError | None] = asyncio.Queue()

    async def _pump() -> None:
        try:
            async for frame in frames:
                await queue.put(frame)
        except Exception as e:
            await queue.put(_PumpError(e))
        finally:
            await queue.put(None)

    pump_task = asyncio.create_task(_pump())
    try:
        while True:
            try:
                if interval > 0:
                    item = await asyncio.wait_for(queue.get(), timeout=interval)
                else:
                    item = await queue.get()
            except TimeoutError:
                yield PING
                continue
            if item is None:
                return
            if isinstance(item, _PumpError):
                raise item.exc
            yield item
    finally:
        pump_task.cancel()
        with suppress(asyncio.CancelledError):
            await pump_task
