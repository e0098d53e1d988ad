from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SYSTEM_ROLES = frozenset({"system", "developer"})


class FunctionCall(BaseModel):
    name: str = ""
    # Normally a JSON-encoded string; some clients send the object itself.
    arguments: Any = None

    model_config = ConfigDict(extra="allow")


class ToolCall(BaseModel):
    id: str | None = None
    type: str = "function"
    function: FunctionCall

    model_config = ConfigDict(extra="allow")


class ChatMessage(BaseModel):
    role: Literal["system", "developer", "user", "assistant", "tool"]
    content: Any = None
    name: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="after")
    def _require_content(self) -> "ChatMessage":
        # Assistant turns that only carry tool calls send `content: null`.
        if self.content is None and not (self.role == "assistant" and self.tool_calls):
            raise ValueError("content is required")
        return self


class FunctionDefinition(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    parameters: dict[str, Any] | None = None

    model_config = ConfigDict(extra="allow")


class ToolDefinition(BaseModel):
    type: Literal["function"] = "function"
    function: FunctionDefinition


class NamedFunction(BaseModel):
    name: str = Field(min_length=1)


class NamedToolChoice(BaseModel):
    type: Literal["function"] = "function"
    function: NamedFunction


ToolChoice = Literal["auto", "none", "required"] | NamedToolChoice


class ChatCompletionRequest(BaseModel):
    model: str | None = None
    messages: list[ChatMessage] = Field(min_length=1)
    tools: list[ToolDefinition] | None = None
    tool_choice: ToolChoice | None = None
    stream: bool = False
    max_tokens: int | None = Field(default=None, ge=1)
    max_completion_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0, le=2)
    top_p: float | None = Field(default=None, ge=0, le=1)

    # Accept extra fields from clients (stop, n, user, etc.).
    model_config = ConfigDict(extra="allow")

    @model_validator(mode="after")
    def _require_conversation(self) -> "ChatCompletionRequest":
        if not any(m.role not in SYSTEM_ROLES for m in self.messages):
            raise ValueError("at least one non-system message is required")
        return self

    @property
    def requested_max_tokens(self) -> int | None:
        return self.max_tokens or self.max_completion_tokens


class CompletionRequest(BaseModel):
    model: str | None = None
    prompt: str | list[str]
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0, le=2)
    top_p: float | None = Field(default=None, ge=0, le=1)

    model_config = ConfigDict(extra="allow")

    @field_validator("prompt")
    @classmethod
    def _require_prompt(cls, value: str | list[str]) -> str | list[str]:
        text = value if isinstance(value, str) else "\n".join(value)
        if not text.strip():
            raise ValueError("prompt is required and must be a non-empty string")
        return value

    @property
    def prompt_text(self) -> str:
        return self.prompt if isinstance(self.prompt, str) else "\n".join(self.prompt)


def format_validation_errors(errors: list[dict[str, Any]]) -> str:
    messages: list[str] = []
    for err in errors:
        loc = ""
        for item in err.get("loc", ()):
            if item == "body":
                continue
            if isinstance(item, int):
                loc += f"[{item}]"
            else:
                loc += f".{item}" if loc else str(item)
        msg = str(err.get("msg") or "invalid value").removeprefix("Value error, ")
        messages.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(messages) or "invalid request body"
