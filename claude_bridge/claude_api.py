from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from .backend import EventStream, ExecutionBackend
from .config import Settings
from .content import NativeEvent, NativeRequest, NativeResult, decode_anthropic_event
from .errors import BackendError, CredentialError, truncate
from .http_client import get_async_client

_ANTHROPIC_VERSION = "2023-06-01"
_DEFAULT_OAUTH_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
_OAUTH_TOKEN_PREFIX = "sk-ant-oat"
_OAUTH_BETA = "oauth-2025-04-20,claude-code-20250219,fine-grained-tool-streaming-2025-05-14"
_CLI_USER_AGENT = "claude-cli/2.0.0 (external, cli)"

# Subscription (OAuth) tokens are only honoured for requests whose system prompt
# opens with the first-party agent identity.
AGENT_IDENTITY = "You are Claude Code, Anthropic's official CLI for Claude."

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class ClaudeOAuthCreds:
    access_token: str | None
    refresh_token: str | None
    expires_at_s: int | None
    token_type: str | None


@dataclass(frozen=True)
class Credential:
    token: str
    oauth: bool


def is_oauth_token(token: str) -> bool:
    return token.startswith(_OAUTH_TOKEN_PREFIX)


def build_auth_headers(credential: Credential, *, stream: bool) -> dict[str, str]:
    headers = {
        "anthropic-version": _ANTHROPIC_VERSION,
        "content-type": "application/json",
        "accept": "text/event-stream" if stream else "application/json",
    }
    if credential.oauth:
        headers["authorization"] = f"Bearer {credential.token}"
        headers["anthropic-beta"] = _OAUTH_BETA
        headers["user-agent"] = _CLI_USER_AGENT
        headers["x-app"] = "cli"
    else:
        headers["x-api-key"] = credential.token
    return headers


def _load_creds(path: Path) -> ClaudeOAuthCreds:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return ClaudeOAuthCreds(None, None, None, None)
    if not isinstance(raw, dict):
        return ClaudeOAuthCreds(None, None, None, None)
    access_token = raw.get("access_token")
    refresh_token = raw.get("refresh_token")
    expires_at_s = raw.get("expires_at_s")
    token_type = raw.get("token_type")
    return ClaudeOAuthCreds(
        access_token if isinstance(access_token, str) else None,
        refresh_token if isinstance(refresh_token, str) else None,
        int(expires_at_s) if isinstance(expires_at_s, (int, float)) else None,
        token_type if isinstance(token_type, str) else None,
    )


def _save_creds(path: Path, creds: ClaudeOAuthCreds) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload: dict[str, Any] = {}
    if creds.access_token:
        payload["access_token"] = creds.access_token
    if creds.refresh_token:
        payload["refresh_token"] = creds.refresh_token
    if creds.expires_at_s is not None:
        payload["expires_at_s"] = int(creds.expires_at_s)
    if creds.token_type:
        payload["token_type"] = creds.token_type
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    try:
        path.chmod(0o600)
    except OSError:
        logger.warning("could not restrict permissions on %s", path)


def _is_expired(expires_at_s: int | None, *, skew_s: int = 90) -> bool:
    if not expires_at_s:
        return True
    return expires_at_s <= int(time.time()) + skew_s


async def _iter_sse_events(resp: httpx.Response) -> AsyncIterator[tuple[str | None, str]]:
    event: str | None = None
    data_lines: list[str] = []
    async for line in resp.aiter_lines():
        if line.startswith(":"):
            continue
        if not line.strip():
            if data_lines:
                yield event, "\n".join(data_lines)
            event = None
            data_lines = []
            continue
        if line.startswith("event:"):
            event = line[len("event:") :].strip() or None
            continue
        if line.startswith("data:"):
            data_lines.append(line[len("data:") :].lstrip())
            continue
    if data_lines:
        yield event, "\n".join(data_lines)


def _pick_header(headers: httpx.Headers, *names: str) -> str | None:
    for name in names:
        value = headers.get(name)
        if value:
            return value
    return None


def _summarize_error_body(resp: httpx.Response) -> str | None:
    body: str | None = None
    try:
        payload = resp.json()
    except ValueError:
        body = resp.text or None
    else:
        if isinstance(payload, dict):
            err = payload.get("error")
            if isinstance(err, dict):
                msg = err.get("message") or err.get("type")
                body = msg if isinstance(msg, str) and msg else json.dumps(err, ensure_ascii=True)
            elif isinstance(err, str):
                body = err
            elif isinstance(payload.get("message"), str):
                body = payload["message"]
        if body is None:
            body = json.dumps(payload, ensure_ascii=True)
    return body.replace("\r", "").replace("\n", "\\n") if body else None


def _summarize_rate_limit_headers(headers: httpx.Headers) -> str | None:
    parts: list[str] = []
    retry_after = headers.get("retry-after")
    if retry_after:
        parts.append(f"retry_after={retry_after}")
    request_id = _pick_header(headers, "request-id", "x-request-id", "anthropic-request-id")
    if request_id:
        parts.append(f"request_id={request_id}")
    for name in ("requests", "tokens"):
        remaining = headers.get(f"anthropic-ratelimit-{name}-remaining")
        if remaining:
            parts.append(f"{name}_remaining={remaining}")
    return " ".join(parts) or None


class ClaudeApiBackend(ExecutionBackend):
    """Calls the Messages API over HTTPS."""

    name = "api"

    def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_async_client("claude-api", timeout_s=self._settings.api_timeout_seconds)

    def _creds_path(self) -> Path:
        return Path(self._settings.oauth_creds_path).expanduser()

    def has_credentials(self) -> bool:
        if self._settings.oauth_token or self._settings.api_key:
            return True
        creds = _load_creds(self._creds_path())
        return bool(creds.access_token or creds.refresh_token)

    async def _refresh_access_token(self, refresh_token: str) -> ClaudeOAuthCreds:
        url = f"{self._settings.oauth_base_url.rstrip('/')}/v1/oauth/token"
        payload = {
            "client_id": self._settings.oauth_client_id or _DEFAULT_OAUTH_CLIENT_ID,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        client = await self._get_client()
        try:
            resp = await client.post(url, json=payload, headers={"Accept": "application/json"})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CredentialError(f"Claude OAuth refresh failed: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("access_token"), str):
            raise CredentialError("Claude OAuth refresh: missing access_token")
        expires_in = data.get("expires_in")
        expires_at_s = None
        if isinstance(expires_in, (int, float)) and expires_in > 0:
            expires_at_s = int(time.time() + int(expires_in))
        return ClaudeOAuthCreds(
            data["access_token"],
            str(data.get("refresh_token") or refresh_token),
            expires_at_s,
            str(data.get("token_type") or "Bearer"),
        )

    async def _oauth_creds(self) -> ClaudeOAuthCreds:
        path = self._creds_path()
        creds = _load_creds(path)
        if creds.access_token and not _is_expired(creds.expires_at_s):
            return creds
        if not creds.refresh_token:
            return creds
        logger.info("refreshing Claude OAuth access token (%s)", path)
        refreshed = await self._refresh_access_token(creds.refresh_token)
        _save_creds(path, refreshed)
        return refreshed

    async def resolve_credential(self) -> Credential:
        if self._settings.oauth_token:
            return Credential(self._settings.oauth_token, oauth=True)
        if self._settings.api_key:
            return Credential(self._settings.api_key, oauth=is_oauth_token(self._settings.api_key))
        creds = await self._oauth_creds()
        if creds.access_token:
            return Credential(creds.access_token, oauth=True)
        raise CredentialError(
            "Claude API: no credentials available. Set ANTHROPIC_API_KEY or CLAUDE_CODE_OAUTH_TOKEN, "
            f"or provide OAuth credentials at {self._settings.oauth_creds_path}."
        )

    async def _prepare(self, request: NativeRequest, *, stream: bool) -> tuple[str, dict[str, str], dict[str, Any]]:
        credential = await self.resolve_credential()
        prefix = None
        if credential.oauth and not (request.system or "").startswith(AGENT_IDENTITY):
            prefix = AGENT_IDENTITY
        payload = request.to_payload(stream=stream, system_prefix=prefix)
        url = f"{self._settings.api_base_url.rstrip('/')}/v1/messages"
        logger.debug(
            "claude-api request: url=%s model=%s max_tokens=%d msg_count=%d tools=%d stream=%s",
            url,
            request.model,
            request.max_tokens,
            len(request.messages),
            len(request.tools),
            stream,
        )
        return url, build_auth_headers(credential, stream=stream), payload

    def _upstream_error(self, resp: httpx.Response, *, url: str, model: str, stream: bool) -> BackendError:
        status = resp.status_code
        mode = "stream" if stream else "request"
        logger.error("claude-api upstream error: mode=%s status=%d url=%s model=%s", mode, status, url, model)
        header_summary = _summarize_rate_limit_headers(resp.headers)
        if header_summary:
            logger.error("claude-api upstream headers: %s", header_summary)
        body = truncate(_summarize_error_body(resp) or "", self._settings.error_body_max_chars)
        return BackendError(f"Claude API returned HTTP {status}: {body or '<empty body>'}")

    async def complete(self, request: NativeRequest) -> NativeResult:
        url, headers, payload = await self._prepare(request, stream=False)
        client = await self._get_client()
        t0 = time.time()
        try:
            resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise BackendError(f"Claude API request failed: {e!r}") from e
        if not resp.is_success:
            raise self._upstream_error(resp, url=url, model=request.model, stream=False)
        try:
            data = resp.json()
        except ValueError as e:
            raise BackendError("Claude API returned a non-JSON response") from e
        logger.debug("claude-api response: status=%d api_latency_ms=%d", resp.status_code, int((time.time() - t0) * 1000))
        return NativeResult.from_anthropic(data)

    async def open_stream(self, request: NativeRequest) -> EventStream:
        url, headers, payload = await self._prepare(request, stream=True)
        client = await self._get_client()
        try:
            resp = await client.send(client.build_request("POST", url, json=payload, headers=headers), stream=True)
        except httpx.HTTPError as e:
            raise BackendError(f"Claude API request failed: {e!r}") from e
        if not resp.is_success:
            try:
                await resp.aread()
                raise self._upstream_error(resp, url=url, model=request.model, stream=True)
            finally:
                await resp.aclose()
        return EventStream(self._iter_events(resp), resp.aclose)

    async def _iter_events(self, resp: httpx.Response) -> AsyncIterator[NativeEvent]:
        try:
            async for event_name, data in _iter_sse_events(resp):
                if not data or data.strip() == "[DONE]":
                    continue
                try:
                    obj = json.loads(data)
                except ValueError:
                    logger.debug("skipping malformed SSE record event=%s data=%.200s", event_name, data)
                    continue
                for event in decode_anthropic_event(obj):
                    yield event
        except httpx.HTTPError as e:
            raise BackendError(f"Claude API stream interrupted: {e!r}") from e
        finally:
            # Closing mid-stream drops the upstream connection.
            await resp.aclose()
