"""OpenAI chat messages -> Messages API request.

Rules applied by `convert_request`:
- system/developer turns are joined into the top-level system instruction
- tool turns become user-side `tool_result` blocks
- assistant tool calls become `tool_use` blocks after any accompanying text
- consecutive same-role turns are merged (the API requires strict alternation)
- the conversation always opens with a user turn
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .content import (
    ContentPart,
    ImagePart,
    NativeMessage,
    NativeRequest,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    new_tool_call_id,
)
from .openai_compat import SYSTEM_ROLES, ChatCompletionRequest, ChatMessage, NamedToolChoice, ToolCall, ToolDefinition

logger = logging.getLogger("uvicorn.error")

PLACEHOLDER_USER_TEXT = "(continuing the conversation)"
EMPTY_INPUT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


def _parse_data_url(data_url: str) -> tuple[str, str] | None:
    # data:<mime>;base64,<payload>
    if not data_url.startswith("data:"):
        return None
    header, _, b64 = data_url.partition(",")
    if not b64:
        return None
    if ";base64" not in header:
        return None
    mime = header[5:].split(";", 1)[0].strip() or "application/octet-stream"
    return mime, "".join(b64.split())


def parse_image_url(url: str) -> ImagePart | None:
    parsed = _parse_data_url(url)
    if parsed:
        mime, b64 = parsed
        return ImagePart(media_type=mime, data=b64)
    if url.startswith(("http://", "https://")):
        return ImagePart(url=url)
    return None


def content_to_parts(content: Any) -> list[ContentPart]:
    if content is None:
        return []
    if isinstance(content, str):
        return [TextPart(content)] if content.strip() else []
    if isinstance(content, dict):
        content = [content]
    if not isinstance(content, list):
        return [TextPart(json.dumps(content, ensure_ascii=False))]

    parts: list[ContentPart] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        t = item.get("type")
        if t == "text":
            text = item.get("text")
            if isinstance(text, str) and text.strip():
                parts.append(TextPart(text))
        elif t == "image_url":
            image_url = item.get("image_url")
            url = image_url.get("url") if isinstance(image_url, dict) else image_url
            if not isinstance(url, str):
                continue
            image = parse_image_url(url)
            if image is not None:
                parts.append(image)
    return parts


def _tool_result_payload(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list) and all(isinstance(p, dict) and p.get("type") == "text" for p in content):
        return "\n".join(str(p.get("text") or "") for p in content)
    return json.dumps(content, ensure_ascii=False)


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.debug("dropping malformed tool call arguments: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _tool_call_part(call: ToolCall) -> ToolCallPart:
    return ToolCallPart(
        id=call.id or new_tool_call_id(),
        name=call.function.name,
        input=parse_tool_arguments(call.function.arguments),
    )


def _message_to_native(message: ChatMessage) -> NativeMessage | None:
    if message.role == "tool":
        result = ToolResultPart(
            tool_use_id=message.tool_call_id or "",
            content=_tool_result_payload(message.content),
        )
        return NativeMessage(role="user", content=[result])

    parts = content_to_parts(message.content)
    if message.role == "assistant":
        # Images are only meaningful on the user side.
        parts = [p for p in parts if not isinstance(p, ImagePart)]
        parts.extend(_tool_call_part(call) for call in message.tool_calls or [])
        return NativeMessage(role="assistant", content=parts) if parts else None

    return NativeMessage(role="user", content=parts) if parts else None


def convert_messages(messages: list[ChatMessage]) -> tuple[str | None, list[NativeMessage]]:
    system_parts: list[str] = []
    out: list[NativeMessage] = []

    for message in messages:
        if message.role in SYSTEM_ROLES:
            text = "\n".join(p.text for p in content_to_parts(message.content) if isinstance(p, TextPart))
            if text.strip():
                system_parts.append(text)
            continue

        native = _message_to_native(message)
        if native is None:
            continue
        if out and out[-1].role == native.role:
            out[-1].content.extend(native.content)
        else:
            out.append(native)

    if not out or out[0].role != "user":
        out.insert(0, NativeMessage(role="user", content=[TextPart(PLACEHOLDER_USER_TEXT)]))

    system = "\n".join(system_parts) or None
    return system, out


def convert_tools(tools: list[ToolDefinition] | None) -> list[dict[str, Any]]:
    return [
        {
            "name": tool.function.name,
            "description": tool.function.description or "",
            "input_schema": tool.function.parameters or dict(EMPTY_INPUT_SCHEMA),
        }
        for tool in tools or []
    ]


def convert_tool_choice(choice: str | NamedToolChoice | None) -> tuple[dict[str, Any] | None, bool]:
    """Return the native tool choice plus whether tool calls must be suppressed."""
    if choice is None:
        return None, False
    if isinstance(choice, NamedToolChoice):
        return {"type": "tool", "name": choice.function.name}, False
    if choice == "required":
        return {"type": "any"}, False
    if choice == "none":
        return {"type": "auto"}, True
    return {"type": "auto"}, False


def convert_request(req: ChatCompletionRequest, *, model: str, default_max_tokens: int) -> NativeRequest:
    system, messages = convert_messages(req.messages)
    tools = convert_tools(req.tools)
    tool_choice, suppress = convert_tool_choice(req.tool_choice)
    return NativeRequest(
        model=model,
        messages=messages,
        system=system,
        tools=tools,
        tool_choice=tool_choice if tools else None,
        max_tokens=req.requested_max_tokens or default_max_tokens,
        temperature=req.temperature,
        top_p=req.top_p,
        suppress_tool_calls=suppress,
    )


def prompt_request(
    prompt: str,
    *,
    model: str,
    max_tokens: int,
    temperature: float | None = None,
    top_p: float | None = None,
) -> NativeRequest:
    """Single-turn request for the legacy completions endpoint."""
    return NativeRequest(
        model=model,
        messages=[NativeMessage(role="user", content=[TextPart(prompt)])],
        max_tokens=max_tokens,
        temperature=temperature,
        top_p=top_p,
    )
