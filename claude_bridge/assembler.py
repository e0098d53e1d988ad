from __future__ import annotations

import math
from typing import Any

from .content import NativeResult, Usage, finish_reason_for


def estimate_tokens(text: str) -> int:
    """Rough token count, about four characters per token.

    Only used when the backend reports no usage. It is an approximation and
    will not match the provider's tokenizer.
    """
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def _usage(result: NativeResult, prompt_text: str, completion_text: str) -> dict[str, int]:
    if result.usage is not None:
        return result.usage.to_openai()
    return Usage(estimate_tokens(prompt_text), estimate_tokens(completion_text)).to_openai()


def assemble_chat_completion(
    result: NativeResult,
    *,
    completion_id: str,
    model: str,
    created: int,
    prompt_text: str = "",
    suppress_tool_calls: bool = False,
) -> dict[str, Any]:
    tool_calls = [] if suppress_tool_calls else result.tool_calls
    text = result.text
    message: dict[str, Any] = {
        "role": "assistant",
        # null only when the turn is nothing but tool calls
        "content": text if result.has_text or not tool_calls else None,
        "tool_calls": None,
    }
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments_json()},
            }
            for call in tool_calls
        ]
    completion_text = text + "".join(call.arguments_json() for call in tool_calls)
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": finish_reason_for(result.stop_reason, suppress_tool_calls=suppress_tool_calls),
            }
        ],
        "usage": _usage(result, prompt_text, completion_text),
    }


def assemble_text_completion(
    result: NativeResult,
    *,
    completion_id: str,
    model: str,
    created: int,
    prompt_text: str = "",
) -> dict[str, Any]:
    """Legacy `/v1/completions` body. Tool calls cannot be represented and are dropped."""
    text = result.text
    return {
        "id": completion_id,
        "object": "text_completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "text": text,
                "index": 0,
                "logprobs": None,
                "finish_reason": finish_reason_for(result.stop_reason, suppress_tool_calls=True),
            }
        ],
        "usage": _usage(result, prompt_text, text),
    }
