"""Tests for the Messages API backend against a mocked transport."""

from __future__ import annotations

import json
import time

import httpx
import pytest

from claude_bridge.claude_api import (
    AGENT_IDENTITY,
    ClaudeApiBackend,
    Credential,
    build_auth_headers,
    is_oauth_token,
)
from claude_bridge.content import (
    NativeMessage,
    NativeRequest,
    StopReason,
    TextDelta,
    TextPart,
    ToolArgumentsDelta,
    ToolCallStart,
    UsageReport,
)
from claude_bridge.errors import BackendError, CredentialError

from .conftest import make_settings


def _request(**kwargs) -> NativeRequest:
    return NativeRequest(
        model="claude-sonnet-4-5-20250929",
        messages=[NativeMessage(role="user", content=[TextPart("hi")])],
        **kwargs,
    )


def _backend(handler, tmp_path, **overrides) -> ClaudeApiBackend:
    values = {
        "backend": "api",
        "api_base_url": "https://api.test",
        "api_key": "sk-ant-api03-test",
        "oauth_token": None,
        "oauth_creds_path": str(tmp_path / "oauth_creds.json"),
        "oauth_base_url": "https://console.test",
    }
    values.update(overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ClaudeApiBackend(make_settings(**values), client=client)


def _sse(*events: dict) -> bytes:
    out = []
    for event in events:
        out.append(f"event: {event['type']}\ndata: {json.dumps(event)}\n\n")
    return "".join(out).encode()


MESSAGE_RESPONSE = {
    "id": "msg_1",
    "type": "message",
    "role": "assistant",
    "content": [{"type": "text", "text": "Hello!"}],
    "stop_reason": "end_turn",
    "usage": {"input_tokens": 8, "output_tokens": 3},
}


class TestAuthHeaders:
    def test_api_key_headers(self):
        headers = build_auth_headers(Credential("sk-ant-api03-x", oauth=False), stream=False)
        assert headers["x-api-key"] == "sk-ant-api03-x"
        assert headers["anthropic-version"] == "2023-06-01"
        assert "authorization" not in headers

    def test_oauth_headers(self):
        headers = build_auth_headers(Credential("sk-ant-oat01-x", oauth=True), stream=True)
        assert headers["authorization"] == "Bearer sk-ant-oat01-x"
        assert "oauth-2025-04-20" in headers["anthropic-beta"]
        assert headers["user-agent"].startswith("claude-cli/")
        assert headers["accept"] == "text/event-stream"
        assert "x-api-key" not in headers

    def test_token_shape(self):
        assert is_oauth_token("sk-ant-oat01-abc")
        assert not is_oauth_token("sk-ant-api03-abc")


class TestComplete:
    @pytest.mark.asyncio
    async def test_posts_messages_request(self, tmp_path):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=MESSAGE_RESPONSE)

        result = await _backend(handler, tmp_path).complete(_request(system="Be brief."))
        assert result.text == "Hello!"
        assert result.stop_reason == "end_turn"
        assert result.usage.input_tokens == 8

        request = seen[0]
        assert str(request.url) == "https://api.test/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant-api03-test"
        body = json.loads(request.content)
        assert body["system"] == "Be brief."
        assert body["messages"] == [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]
        assert "stream" not in body

    @pytest.mark.asyncio
    async def test_oauth_token_prefixes_agent_identity(self, tmp_path):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=MESSAGE_RESPONSE)

        backend = _backend(handler, tmp_path, api_key=None, oauth_token="sk-ant-oat01-test")
        await backend.complete(_request(system="Be brief."))
        request = seen[0]
        assert request.headers["authorization"] == "Bearer sk-ant-oat01-test"
        assert json.loads(request.content)["system"] == f"{AGENT_IDENTITY}\n\nBe brief."

    @pytest.mark.asyncio
    async def test_non_2xx_is_backend_error(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(529, json={"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})

        with pytest.raises(BackendError) as excinfo:
            await _backend(handler, tmp_path).complete(_request())
        assert excinfo.value.status_code == 502
        assert excinfo.value.message == "Claude API returned HTTP 529: Overloaded"

    @pytest.mark.asyncio
    async def test_transport_error_is_backend_error(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(BackendError, match="request failed"):
            await _backend(handler, tmp_path).complete(_request())

    @pytest.mark.asyncio
    async def test_missing_credentials(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        backend = _backend(handler, tmp_path, api_key=None)
        assert not backend.has_credentials()
        with pytest.raises(CredentialError):
            await backend.complete(_request())


class TestOAuthCredsFile:
    @pytest.mark.asyncio
    async def test_valid_creds_file_is_used(self, tmp_path):
        creds = tmp_path / "oauth_creds.json"
        creds.write_text(json.dumps({"access_token": "sk-ant-oat01-file", "expires_at_s": int(time.time()) + 3600}))
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=MESSAGE_RESPONSE)

        backend = _backend(handler, tmp_path, api_key=None)
        assert backend.has_credentials()
        await backend.complete(_request())
        assert seen[0].headers["authorization"] == "Bearer sk-ant-oat01-file"

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_and_saved(self, tmp_path):
        creds = tmp_path / "oauth_creds.json"
        creds.write_text(json.dumps({"access_token": "old", "refresh_token": "refresh-1", "expires_at_s": 1}))
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/v1/oauth/token":
                return httpx.Response(200, json={"access_token": "sk-ant-oat01-new", "expires_in": 3600})
            return httpx.Response(200, json=MESSAGE_RESPONSE)

        await _backend(handler, tmp_path, api_key=None).complete(_request())

        refresh = json.loads(seen[0].content)
        assert str(seen[0].url) == "https://console.test/v1/oauth/token"
        assert refresh["grant_type"] == "refresh_token"
        assert refresh["refresh_token"] == "refresh-1"
        assert seen[1].headers["authorization"] == "Bearer sk-ant-oat01-new"
        saved = json.loads(creds.read_text())
        assert saved["access_token"] == "sk-ant-oat01-new"
        assert saved["refresh_token"] == "refresh-1"

    @pytest.mark.asyncio
    async def test_refresh_failure_is_credential_error(self, tmp_path):
        creds = tmp_path / "oauth_creds.json"
        creds.write_text(json.dumps({"refresh_token": "refresh-1"}))

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(CredentialError, match="refresh failed"):
            await _backend(handler, tmp_path, api_key=None).complete(_request())


class TestStream:
    @pytest.mark.asyncio
    async def test_decodes_sse_events(self, tmp_path):
        body = _sse(
            {"type": "message_start", "message": {"id": "msg_1", "usage": {"input_tokens": 8, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "ping"},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "toolu_1", "name": "f", "input": {}}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "{}"}},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 12}},
            {"type": "message_stop"},
        )
        body = b": comment\n\nevent: junk\ndata: {not json\n\n" + body
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        events = await _backend(handler, tmp_path).open_stream(_request())
        collected = [event async for event in events]
        assert collected == [
            UsageReport(input_tokens=8),
            TextDelta("Hi"),
            ToolCallStart(id="toolu_1", name="f"),
            ToolArgumentsDelta("{}"),
            StopReason("tool_use"),
            UsageReport(output_tokens=12),
        ]
        assert json.loads(seen[0].content)["stream"] is True

    @pytest.mark.asyncio
    async def test_non_2xx_fails_before_iteration(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"type": "authentication_error", "message": "invalid x-api-key"}})

        with pytest.raises(BackendError, match="HTTP 401: invalid x-api-key"):
            await _backend(handler, tmp_path).open_stream(_request())

    @pytest.mark.asyncio
    async def test_error_event_fails_stream(self, tmp_path):
        body = _sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "par"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        events = await _backend(handler, tmp_path).open_stream(_request())
        collected = []
        with pytest.raises(BackendError, match="Overloaded"):
            async for event in events:
                collected.append(event)
        assert collected == [TextDelta("par")]

    @pytest.mark.asyncio
    async def test_close_before_iteration_closes_response(self, tmp_path):
        class _TrackedBody(httpx.AsyncByteStream):
            closed = False

            async def __aiter__(self):
                yield _sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "never"}})

            async def aclose(self) -> None:
                type(self).closed = True

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=_TrackedBody(), headers={"content-type": "text/event-stream"})

        events = await _backend(handler, tmp_path).open_stream(_request())
        await events.aclose()
        assert _TrackedBody.closed is True
        assert [event async for event in events] == []
