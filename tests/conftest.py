"""Pytest configuration and fixtures for testing."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from claude_bridge.backend import EventStream, ExecutionBackend
from claude_bridge.config import Settings
from claude_bridge.content import (
    NativeEvent,
    NativeRequest,
    NativeResult,
    StopReason,
    TextDelta,
    TextPart,
    Usage,
)
from claude_bridge.errors import BridgeError
from claude_bridge.server import create_app


class FakeBackend(ExecutionBackend):
    """Scripted backend: returns a fixed result or replays a fixed event list."""

    name = "fake"

    def __init__(
        self,
        *,
        result: NativeResult | None = None,
        events: list[NativeEvent] | None = None,
        error: BridgeError | None = None,
        open_error: BridgeError | None = None,
        stream_error: BridgeError | None = None,
        delay: float = 0,
    ) -> None:
        self.result = result or NativeResult(
            content=[TextPart("Hello!")],
            stop_reason="end_turn",
            usage=Usage(input_tokens=5, output_tokens=2),
        )
        self.events = events if events is not None else [TextDelta("Hel"), TextDelta("lo"), StopReason("end_turn")]
        self.error = error
        self.open_error = open_error
        self.stream_error = stream_error
        self.delay = delay
        self.requests: list[NativeRequest] = []
        self.stream_closed = False
        self.cancelled = False

    async def complete(self, request: NativeRequest) -> NativeResult:
        self.requests.append(request)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return self.result

    async def open_stream(self, request: NativeRequest) -> EventStream:
        self.requests.append(request)
        if self.open_error is not None:
            raise self.open_error
        return EventStream(self._iter_events(), self._on_close)

    async def _on_close(self) -> None:
        self.stream_closed = True

    async def _iter_events(self) -> AsyncIterator[NativeEvent]:
        try:
            for event in self.events:
                yield event
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "host": "127.0.0.1",
        "port": 0,
        "bearer_token": None,
        "backend": "cli",
        "default_model": "claude-sonnet-4-5-20250929",
        "default_max_tokens": 8192,
        "max_concurrency": 2,
        "max_prompt_chars": 100_000,
        "sse_keepalive_seconds": 0,
        "cors_origins": "",
        "log_events": False,
        "log_render_rich": False,
    }
    values.update(overrides)
    return Settings(**values)


def parse_sse(body: str) -> list[Any]:
    """Split an SSE body into decoded `data:` payloads; `[DONE]` stays a string."""
    out: list[Any] = []
    for frame in body.split("\n\n"):
        frame = frame.strip()
        if not frame or frame.startswith(":"):
            continue
        assert frame.startswith("data: "), frame
        data = frame[len("data: ") :]
        out.append(data if data == "[DONE]" else json.loads(data))
    return out


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def app(settings: Settings, backend: FakeBackend):
    return create_app(settings, backend)


@pytest.fixture
def client(app) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
