from __future__ import annotations

from typing import Any

KNOWN_MODELS: list[tuple[str, str]] = [
    ("claude-opus-4-6", "Claude Opus 4.6"),
    ("claude-opus-4-5-20251101", "Claude Opus 4.5"),
    ("claude-sonnet-4-5-20250929", "Claude Sonnet 4.5"),
    ("claude-opus-4-20250514", "Claude Opus 4"),
    ("claude-sonnet-4-20250514", "Claude Sonnet 4"),
    ("claude-haiku-3-5-20241022", "Claude Haiku 3.5"),
]

# `None` means "the configured default model".
MODEL_ALIASES: dict[str, str | None] = {
    "gpt-4": None,
    "gpt-4o": None,
    "gpt-4-turbo": None,
    "gpt-3.5-turbo": "claude-haiku-3-5-20241022",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-6",
    "opus4.5": "claude-opus-4-5-20251101",
    "opus4": "claude-opus-4-20250514",
    "haiku": "claude-haiku-3-5-20241022",
}


def resolve_model(requested: str | None, default_model: str) -> str:
    name = (requested or "").strip()
    if not name:
        return default_model
    if name in MODEL_ALIASES:
        return MODEL_ALIASES[name] or default_model
    return name


def model_entry(model_id: str, *, created: int) -> dict[str, Any]:
    return {"id": model_id, "object": "model", "created": created, "owned_by": "anthropic"}


def find_model(model_id: str) -> str | None:
    for known_id, _ in KNOWN_MODELS:
        if known_id == model_id:
            return known_id
    return None
