from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import suppress
from typing import Any

from .backend import EventStream, ExecutionBackend
from .config import Settings
from .content import (
    NativeEvent,
    NativeRequest,
    NativeResult,
    StopReason,
    TextDelta,
    TextPart,
    UsageReport,
    decode_anthropic_event,
    usage_from_anthropic,
)
from .errors import BackendError, BackendTimeout, truncate

logger = logging.getLogger("uvicorn.error")

_STDERR_CAP = 64_000
_TERMINATE_GRACE_S = 5.0
_TURN_SEPARATOR = "\n\n"


def build_claude_cmd(
    *,
    claude_bin: str,
    prompt: str,
    model: str,
    system_prompt: str | None,
    stream: bool,
    skip_permissions: bool,
) -> list[str]:
    cmd: list[str] = [claude_bin, "--print", "--model", model]
    if system_prompt:
        cmd.extend(["--system-prompt", system_prompt])
    if stream:
        # stream-json is only available together with --verbose.
        cmd.extend(["--verbose", "--output-format", "stream-json", "--include-partial-messages"])
    else:
        cmd.extend(["--output-format", "json"])
    cmd.append("--no-session-persistence")
    if skip_permissions:
        cmd.append("--dangerously-skip-permissions")
    # Prompt is positional and must come last.
    cmd.append("--")
    cmd.append(prompt)
    return cmd


def _redacted(cmd: list[str]) -> list[str]:
    out = cmd[:-1] + ["[PROMPT]"]
    if "--system-prompt" in out:
        idx = out.index("--system-prompt") + 1
        out[idx] = "[SYSTEM]"
    return out


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with suppress(ProcessLookupError):
            proc.kill()


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE_S)
    except TimeoutError:
        with suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


def _find_result_object(obj: Any) -> dict[str, Any] | None:
    if isinstance(obj, dict):
        return obj
    # `--verbose` turns json output into the full event list.
    if isinstance(obj, list):
        for item in reversed(obj):
            if isinstance(item, dict) and item.get("type") == "result":
                return item
    return None


def parse_cli_result(stdout: str) -> NativeResult:
    """Parse `--output-format json` output. Non-JSON output is used verbatim."""
    text = stdout.strip()
    try:
        obj = json.loads(text)
    except ValueError:
        return NativeResult(content=[TextPart(text)] if text else [])
    result = _find_result_object(obj)
    if result is None:
        return NativeResult(content=[TextPart(text)] if text else [])
    if result.get("is_error"):
        raise BackendError(f"Claude CLI error: {result.get('result') or result.get('subtype') or 'unknown error'}")
    body = result.get("result")
    body = body if isinstance(body, str) else ""
    stop_reason = result.get("stop_reason")
    return NativeResult(
        content=[TextPart(body)] if body else [],
        stop_reason=stop_reason if isinstance(stop_reason, str) else None,
        usage=usage_from_anthropic(result.get("usage")),
    )


class _AgentToolFilter:
    """Decodes `stream_event` payloads, dropping the agent's own tool use.

    The CLI executes its built-in tools itself, so those blocks (and the
    intermediate `tool_use` stop reasons) must not reach the client as tool
    calls it is expected to run. Text from successive agent turns is separated
    by a blank line.
    """

    def __init__(self) -> None:
        self._tool_blocks: set[Any] = set()
        self._text_seen = False
        self._turn_break = False

    def decode(self, raw: Any) -> list[NativeEvent]:
        if not isinstance(raw, dict):
            return []
        etype = raw.get("type")
        index = raw.get("index")
        if etype == "message_start":
            self._tool_blocks.clear()
            self._turn_break = self._text_seen
        elif etype == "content_block_start":
            block = raw.get("content_block")
            if isinstance(block, dict) and block.get("type") in {"tool_use", "server_tool_use"}:
                self._tool_blocks.add(index)
                return []
        elif etype in {"content_block_delta", "content_block_stop"} and index in self._tool_blocks:
            return []
        events = decode_anthropic_event(raw)
        if self._tool_blocks:
            events = [e for e in events if not (isinstance(e, StopReason) and e.reason == "tool_use")]
        if any(isinstance(e, TextDelta) for e in events):
            if self._turn_break:
                events.insert(0, TextDelta(_TURN_SEPARATOR))
                self._turn_break = False
            self._text_seen = True
        return events


class ClaudeCliBackend(ExecutionBackend):
    """Runs the local `claude` agent in single-shot print mode."""

    name = "cli"

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def _spawn(self, request: NativeRequest, *, stream: bool) -> asyncio.subprocess.Process:
        if request.has_images:
            logger.debug("claude-cli: image parts cannot be passed on the command line; dropped")
        if request.tools:
            logger.debug("claude-cli: %d client tool definitions are not forwarded", len(request.tools))
        cmd = build_claude_cmd(
            claude_bin=self._settings.claude_bin,
            prompt=request.render_prompt(),
            model=request.model,
            system_prompt=request.system,
            stream=stream,
            skip_permissions=self._settings.cli_skip_permissions,
        )
        logger.debug("spawning Claude CLI: %s", _redacted(cmd))
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._settings.subprocess_stream_limit,
            )
        except OSError as e:
            raise BackendError(f"Failed to start Claude CLI ({self._settings.claude_bin}): {e}") from e

    def _exit_error(self, rc: int, stderr: str, stdout: str = "") -> BackendError:
        detail = stderr.strip()
        if not detail and stdout.strip():
            try:
                obj = _find_result_object(json.loads(stdout))
            except ValueError:
                obj = None
            if obj is not None and isinstance(obj.get("result"), str):
                detail = obj["result"]
        return BackendError(
            f"Claude CLI exited with code {rc}: {truncate(detail, self._settings.error_body_max_chars) or '<no output>'}"
        )

    async def complete(self, request: NativeRequest) -> NativeResult:
        proc = await self._spawn(request, stream=False)
        timeout = self._settings.timeout_seconds
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            _kill(proc)
            raise BackendTimeout(f"Claude CLI timed out after {timeout}s") from None
        finally:
            await _terminate(proc)

        stdout = out.decode(errors="ignore")
        if proc.returncode != 0:
            raise self._exit_error(proc.returncode or -1, err.decode(errors="ignore"), stdout)
        return parse_cli_result(stdout)

    async def open_stream(self, request: NativeRequest) -> EventStream:
        proc = await self._spawn(request, stream=True)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.timeout_seconds
        # Enforces the deadline even if the stream is never iterated.
        watchdog = loop.call_at(deadline + _TERMINATE_GRACE_S, _kill, proc)

        async def _close() -> None:
            watchdog.cancel()
            await _terminate(proc)

        return EventStream(self._iter_events(proc, deadline, watchdog), _close)

    async def _iter_events(
        self, proc: asyncio.subprocess.Process, deadline: float, watchdog: asyncio.TimerHandle
    ) -> AsyncIterator[NativeEvent]:
        stderr_buf = bytearray()

        async def _drain_stderr() -> None:
            if proc.stderr is None:
                return
            while True:
                chunk = await proc.stderr.read(4096)
                if not chunk:
                    return
                stderr_buf.extend(chunk)
                if len(stderr_buf) > _STDERR_CAP:
                    del stderr_buf[:-_STDERR_CAP]

        drain_task = asyncio.create_task(_drain_stderr())
        loop = asyncio.get_running_loop()
        timeout = self._settings.timeout_seconds
        tool_filter = _AgentToolFilter()
        streamed_text = False
        result_obj: dict[str, Any] | None = None

        try:
            if proc.stdout is None:
                raise BackendError("Claude CLI stdout not available")

            while True:
                try:
                    line = await asyncio.wait_for(proc.stdout.readline(), timeout=max(deadline - loop.time(), 0))
                except TimeoutError:
                    _kill(proc)
                    raise BackendTimeout(f"Claude CLI timed out after {timeout}s") from None
                except ValueError:
                    logger.warning("claude-cli: skipping stdout line longer than %d bytes", self._settings.subprocess_stream_limit)
                    continue

                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    evt = json.loads(line.decode(errors="ignore"))
                except ValueError:
                    logger.debug("claude-cli: non-JSON stdout line: %.200s", line)
                    continue
                if not isinstance(evt, dict):
                    continue

                etype = evt.get("type")
                if etype == "stream_event":
                    for event in tool_filter.decode(evt.get("event")):
                        if isinstance(event, TextDelta):
                            streamed_text = True
                        yield event
                elif etype == "result":
                    result_obj = evt

            # stdout can close while the process (or a child holding stderr) lives on.
            try:
                rc = await asyncio.wait_for(proc.wait(), timeout=max(deadline - loop.time(), 0))
                await asyncio.wait_for(drain_task, timeout=max(deadline - loop.time(), 0))
            except TimeoutError:
                _kill(proc)
                raise BackendTimeout(f"Claude CLI timed out after {timeout}s") from None

            if result_obj is not None:
                usage = usage_from_anthropic(result_obj.get("usage"))
                if usage is not None:
                    yield UsageReport(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens)
                body = result_obj.get("result")
                if result_obj.get("is_error"):
                    raise BackendError(f"Claude CLI error: {body or result_obj.get('subtype') or 'unknown error'}")
                # Without partial messages the text only shows up in the result line.
                if not streamed_text and isinstance(body, str) and body:
                    yield TextDelta(body)

            if rc != 0:
                raise self._exit_error(rc, bytes(stderr_buf).decode(errors="ignore"))
        finally:
            watchdog.cancel()
            await _terminate(proc)
            if not drain_task.done():
                drain_task.cancel()
