"""Typed model shared by the converter, the backends and the translators.

Content parts and stream events are small frozen dataclasses forming tagged
unions; callers dispatch on their type instead of probing dict keys. The only
place that reads raw Anthropic event dicts is `decode_anthropic_event`, used by
both the HTTP backend (SSE records) and the CLI backend (`stream_event` lines).
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from .errors import BackendError

NativeRole = Literal["user", "assistant"]


def new_tool_call_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class TextPart:
    text: str

    def to_native(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImagePart:
    """Either inline base64 (`media_type` + `data`) or a remote `url`."""

    media_type: str | None = None
    data: str | None = None
    url: str | None = None

    def to_native(self) -> dict[str, Any]:
        if self.url is not None:
            return {"type": "image", "source": {"type": "url", "url": self.url}}
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }


@dataclass(frozen=True)
class ToolCallPart:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_native(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}

    def arguments_json(self) -> str:
        return json.dumps(self.input, ensure_ascii=False)


@dataclass(frozen=True)
class ToolResultPart:
    tool_use_id: str
    content: str

    def to_native(self) -> dict[str, Any]:
        return {"type": "tool_result", "tool_use_id": self.tool_use_id, "content": self.content}


ContentPart = Union[TextPart, ImagePart, ToolCallPart, ToolResultPart]


@dataclass
class NativeMessage:
    role: NativeRole
    content: list[ContentPart]

    def to_native(self) -> dict[str, Any]:
        return {"role": self.role, "content": [part.to_native() for part in self.content]}


def _render_part(part: ContentPart) -> str:
    if isinstance(part, TextPart):
        return part.text
    if isinstance(part, ToolCallPart):
        return f"[Tool call: {part.name} id={part.id}]\n{part.arguments_json()}"
    if isinstance(part, ToolResultPart):
        return f"[Tool result: {part.tool_use_id}]\n{part.content}"
    return ""


@dataclass
class NativeRequest:
    model: str
    messages: list[NativeMessage]
    system: str | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    tool_choice: dict[str, Any] | None = None
    max_tokens: int = 8192
    temperature: float | None = None
    top_p: float | None = None
    # Set for `tool_choice: "none"`: the backend runs with "auto" and tool calls
    # are dropped from whatever comes back.
    suppress_tool_calls: bool = False

    @property
    def has_images(self) -> bool:
        return any(isinstance(p, ImagePart) for m in self.messages for p in m.content)

    def to_payload(self, *, stream: bool, system_prefix: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [m.to_native() for m in self.messages],
        }
        system = self.system
        if system_prefix:
            system = f"{system_prefix}\n\n{system}" if system else system_prefix
        if system:
            payload["system"] = system
        if self.tools:
            payload["tools"] = self.tools
            if self.tool_choice:
                payload["tool_choice"] = self.tool_choice
        # Newer models reject requests that set both.
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        elif self.top_p is not None:
            payload["top_p"] = self.top_p
        if stream:
            payload["stream"] = True
        return payload

    def render_prompt(self) -> str:
        """Flatten the conversation into the single prompt string the CLI takes.

        A lone user turn is passed through verbatim; anything longer becomes a
        Human/Assistant transcript so the agent sees the prior turns.
        """
        turns: list[tuple[str, str]] = []
        for message in self.messages:
            text = "\n".join(t for t in (_render_part(p) for p in message.content) if t)
            if text:
                turns.append((message.role, text))
        if len(turns) == 1 and turns[0][0] == "user":
            return turns[0][1]
        labels = {"user": "Human", "assistant": "Assistant"}
        return "\n\n".join(f"{labels[role]}: {text}" for role, text in turns)


@dataclass(frozen=True)
class Usage:
    input_tokens: int
    output_tokens: int

    def to_openai(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.input_tokens,
            "completion_tokens": self.output_tokens,
            "total_tokens": self.input_tokens + self.output_tokens,
        }


def usage_from_anthropic(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    if "input_tokens" not in raw and "output_tokens" not in raw:
        return None
    try:
        return Usage(int(raw.get("input_tokens") or 0), int(raw.get("output_tokens") or 0))
    except (TypeError, ValueError):
        return None


@dataclass
class NativeResult:
    content: list[ContentPart]
    stop_reason: str | None = None
    usage: Usage | None = None

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def has_text(self) -> bool:
        return any(isinstance(p, TextPart) for p in self.content)

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.content if isinstance(p, ToolCallPart)]

    @classmethod
    def from_anthropic(cls, data: Any) -> "NativeResult":
        if not isinstance(data, dict):
            return cls(content=[])
        parts: list[ContentPart] = []
        blocks = data.get("content")
        if isinstance(blocks, list):
            for block in blocks:
                if not isinstance(block, dict):
                    continue
                btype = block.get("type")
                if btype == "text" and isinstance(block.get("text"), str):
                    parts.append(TextPart(block["text"]))
                elif btype == "tool_use":
                    raw_input = block.get("input")
                    parts.append(
                        ToolCallPart(
                            id=str(block.get("id") or new_tool_call_id()),
                            name=str(block.get("name") or ""),
                            input=raw_input if isinstance(raw_input, dict) else {},
                        )
                    )
        stop_reason = data.get("stop_reason")
        return cls(
            content=parts,
            stop_reason=stop_reason if isinstance(stop_reason, str) else None,
            usage=usage_from_anthropic(data.get("usage")),
        )


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str


@dataclass(frozen=True)
class ToolArgumentsDelta:
    fragment: str


@dataclass(frozen=True)
class StopReason:
    reason: str | None


@dataclass(frozen=True)
class UsageReport:
    input_tokens: int | None = None
    output_tokens: int | None = None


NativeEvent = Union[TextDelta, ToolCallStart, ToolArgumentsDelta, StopReason, UsageReport]


def decode_anthropic_event(obj: Any) -> list[NativeEvent]:
    """Decode one raw Messages API stream event into typed events.

    Unknown event types and unexpected shapes decode to nothing. An `error`
    event raises `BackendError`.
    """
    if not isinstance(obj, dict):
        return []
    etype = obj.get("type")

    if etype == "content_block_start":
        block = obj.get("content_block")
        if not isinstance(block, dict):
            return []
        if block.get("type") == "tool_use":
            return [ToolCallStart(id=str(block.get("id") or new_tool_call_id()), name=str(block.get("name") or ""))]
        text = block.get("text")
        if block.get("type") == "text" and isinstance(text, str) and text:
            return [TextDelta(text)]
        return []

    if etype == "content_block_delta":
        delta = obj.get("delta")
        if not isinstance(delta, dict):
            return []
        dtype = delta.get("type")
        if dtype == "text_delta":
            text = delta.get("text")
            return [TextDelta(text)] if isinstance(text, str) and text else []
        if dtype == "input_json_delta":
            fragment = delta.get("partial_json")
            return [ToolArgumentsDelta(fragment)] if isinstance(fragment, str) and fragment else []
        return []

    if etype == "message_start":
        message = obj.get("message")
        usage = message.get("usage") if isinstance(message, dict) else None
        if isinstance(usage, dict) and isinstance(usage.get("input_tokens"), int):
            return [UsageReport(input_tokens=usage["input_tokens"])]
        return []

    if etype == "message_delta":
        events: list[NativeEvent] = []
        delta = obj.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("stop_reason"), str):
            events.append(StopReason(delta["stop_reason"]))
        usage = obj.get("usage")
        if isinstance(usage, dict) and isinstance(usage.get("output_tokens"), int):
            events.append(UsageReport(output_tokens=usage["output_tokens"]))
        return events

    if etype == "error":
        err = obj.get("error")
        message = None
        if isinstance(err, dict):
            message = err.get("message") or err.get("type")
        raise BackendError(f"Claude API stream error: {message or 'unknown error'}")

    return []


_FINISH_REASONS: dict[str, str] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "refusal": "stop",
    "max_tokens": "length",
    "model_context_window_exceeded": "length",
    "tool_use": "tool_calls",
}


def finish_reason_for(stop_reason: str | None, *, suppress_tool_calls: bool = False) -> str:
    """Map a backend stop reason onto stop, length or tool_calls.

    Unknown and missing reasons map to "stop".
    """
    reason = _FINISH_REASONS.get(stop_reason or "", "stop")
    if reason == "tool_calls" and suppress_tool_calls:
        return "stop"
    return reason
