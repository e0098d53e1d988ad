from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable
from contextlib import aclosing, asynccontextmanager, suppress
from typing import Any, TypeVar

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from .admission import AdmissionController, ExecutionSlot
from .assembler import assemble_chat_completion, assemble_text_completion
from .backend import EventStream, ExecutionBackend, build_backend
from .catalog import KNOWN_MODELS, MODEL_ALIASES, find_model, model_entry, resolve_model
from .config import Settings, load_settings
from .content import NativeEvent, NativeRequest, NativeResult
from .converter import convert_request, prompt_request
from .errors import (
    BridgeError,
    CapacityExceededError,
    InvalidRequestError,
    ModelNotFoundError,
    PromptTooLargeError,
    openai_error_body,
)
from .http_client import aclose_all as _aclose_http_clients
from .openai_compat import ChatCompletionRequest, CompletionRequest, format_validation_errors
from .reporting import RequestStats, maybe_print_stats, print_error_panel, print_separator, truncate_for_log
from .streaming import StreamTranslator, with_keepalive

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

_DISCONNECT_POLL_SECONDS = 0.5
_STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


class ClientDisconnected(Exception):
    """The client went away before a non-streaming response was ready."""


def _check_auth(settings: Settings, authorization: str | None) -> None:
    token = settings.bearer_token
    if not token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization: Bearer <token>")
    if authorization.removeprefix("Bearer ").strip() != token:
        raise HTTPException(status_code=403, detail="Invalid token")


def _http_error_type(status_code: int) -> str:
    if status_code == 401:
        return "authentication_error"
    if status_code == 403:
        return "permission_error"
    if status_code >= 500:
        return "server_error"
    return "invalid_request_error"


def _validation_param(errors: list[dict[str, Any]]) -> str | None:
    for err in errors:
        for item in err.get("loc", ()):
            if isinstance(item, str) and item != "body":
                return item
    return None


def _check_prompt_size(settings: Settings, native: NativeRequest) -> str:
    prompt_text = native.render_prompt()
    size = len(prompt_text) + len(native.system or "")
    if size > settings.max_prompt_chars:
        raise PromptTooLargeError(
            f"Prompt is {size} characters, which exceeds the limit of {settings.max_prompt_chars}",
            param="messages",
        )
    return prompt_text


def _wants_usage(req: ChatCompletionRequest) -> bool:
    options = (req.model_extra or {}).get("stream_options")
    return isinstance(options, dict) and options.get("include_usage") is True


async def _await_unless_disconnected(request: Request, awaitable: Awaitable[T]) -> T:
    """Await `awaitable`, cancelling it if the client disconnects first."""
    task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=_DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task


async def _logged_events(events: AsyncIterator[NativeEvent], resp_id: str) -> AsyncIterator[NativeEvent]:
    async with aclosing(events):
        async for event in events:
            logger.info("[%s] event %r", resp_id, event)
            yield event


def _log_startup_config(settings: Settings, backend: ExecutionBackend, capacity: int) -> None:
    # Secrets (tokens, API keys) are reported as set/unset only.
    items: list[tuple[str, object]] = [
        ("backend", backend.name),
        ("default_model", settings.default_model),
        ("default_max_tokens", settings.default_max_tokens),
        ("max_concurrency", capacity),
        ("timeout_seconds", settings.timeout_seconds),
        ("max_prompt_chars", settings.max_prompt_chars),
        ("sse_keepalive_seconds", settings.sse_keepalive_seconds),
        ("gateway_token", "set" if settings.bearer_token else "unset"),
        ("cors_origins", settings.cors_origins or "-"),
    ]
    if backend.name == "cli":
        items.append(("claude_bin", settings.claude_bin))
        items.append(("cli_skip_permissions", settings.cli_skip_permissions))
    else:
        items.append(("api_base_url", settings.api_base_url))
        items.append(("oauth_creds_path", settings.oauth_creds_path))
        items.append(("credentials", "available" if backend.has_credentials() else "missing"))
    width = max(len(k) for k, _ in items)
    rendered = "Bridge config:\n" + "\n".join(f"  {k:<{width}} = {v}" for k, v in items)
    logger.info(rendered)


def create_app(settings: Settings | None = None, backend: ExecutionBackend | None = None) -> FastAPI:
    settings = settings or load_settings()
    backend = backend or build_backend(settings)
    admission = AdmissionController(max(settings.max_concurrency, 1))
    stats = RequestStats()
    started_at = int(time.time())

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        _log_startup_config(settings, backend, admission.capacity)
        if not backend.has_credentials():
            logger.warning("no Claude API credentials found; requests will fail until one is configured")
        yield
        await _aclose_http_clients()

    app = FastAPI(title="claude-bridge", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.backend = backend
    app.state.admission = admission
    app.state.stats = stats

    origins = settings.cors_origin_list()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(BridgeError)
    async def _bridge_error(_request: Request, exc: BridgeError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = list(exc.errors())
        if any(err.get("type") == "json_invalid" for err in errors):
            message = "Request body is not valid JSON"
        else:
            message = format_validation_errors(errors)
        body = openai_error_body(message, error_type="invalid_request_error", param=_validation_param(errors))
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = "not_found" if exc.status_code == 404 else None
        body = openai_error_body(str(exc.detail), error_type=_http_error_type(exc.status_code), code=code)
        return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))

    @app.exception_handler(ClientDisconnected)
    async def _client_disconnected(_request: Request, _exc: ClientDisconnected) -> JSONResponse:
        body = openai_error_body("Client closed request", error_type="invalid_request_error", code="client_closed_request")
        return JSONResponse(status_code=499, content=body)

    def _record_failure(resp_id: str, exc: BridgeError) -> None:
        logger.error("[%s] error status=%d %s", resp_id, exc.status_code, truncate_for_log(exc.message, settings.log_max_chars))
        stats.record_failure(exc.status_code)
        if settings.log_render_rich:
            print_error_panel(resp_id, exc.message, exc.status_code)
        maybe_print_stats(stats, rich_enabled=settings.log_render_rich)

    def _record_success(resp_id: str, t0: float, usage: dict[str, int], *, chars: int, finish_reason: str | None) -> None:
        duration_ms = int((time.time() - t0) * 1000)
        logger.info(
            "[%s] response status=200 duration_ms=%d chars=%d finish=%s usage=%s",
            resp_id,
            duration_ms,
            chars,
            finish_reason,
            usage,
        )
        stats.record_success(duration_ms, usage)
        maybe_print_stats(stats, rich_enabled=settings.log_render_rich)

    def _admit(resp_id: str, model: str) -> ExecutionSlot:
        slot = admission.acquire()
        if slot is None:
            logger.warning("[%s] rejected: %d/%d executions in flight", resp_id, admission.in_flight, admission.capacity)
            stats.record_failure(CapacityExceededError.status_code)
            raise CapacityExceededError(
                f"Too many concurrent requests (limit {admission.capacity}); retry later"
            )
        if settings.log_render_rich:
            print_separator(resp_id, model=model, active=admission.in_flight)
        return slot

    async def _complete(request: Request, native: NativeRequest, resp_id: str) -> NativeResult:
        slot = _admit(resp_id, native.model)
        try:
            result = await _await_unless_disconnected(request, backend.execute(native, stream=False))
            assert isinstance(result, NativeResult)
            return result
        except ClientDisconnected:
            logger.info("[%s] client disconnected; backend call cancelled", resp_id)
            stats.record_failure(499)
            raise
        except BridgeError as e:
            _record_failure(resp_id, e)
            raise
        finally:
            slot.release()

    async def _stream(
        request: Request,
        native: NativeRequest,
        *,
        resp_id: str,
        created: int,
        prompt_text: str,
        include_usage: bool,
        t0: float,
    ) -> StreamingResponse:
        slot = _admit(resp_id, native.model)
        try:
            source = await backend.execute(native, stream=True)
        except BridgeError as e:
            slot.release()
            _record_failure(resp_id, e)
            raise
        except BaseException:
            slot.release()
            raise
        assert isinstance(source, EventStream)
        events: AsyncIterator[NativeEvent] = source
        if settings.log_events:
            events = _logged_events(source, resp_id)

        async def _finish() -> None:
            # Runs even when the client left before the body started.
            try:
                await source.aclose()
            finally:
                slot.release()

        translator = StreamTranslator(
            completion_id=resp_id,
            model=native.model,
            created=created,
            suppress_tool_calls=native.suppress_tool_calls,
            include_usage=include_usage,
            prompt_text=prompt_text,
        )

        async def sse_gen() -> AsyncIterator[str]:
            try:
                frames = with_keepalive(translator.relay(events), settings.sse_keepalive_seconds)
                async with aclosing(frames):
                    async for frame in frames:
                        if await request.is_disconnected():
                            logger.info("[%s] client disconnected; stream aborted", resp_id)
                            return
                        yield frame
            finally:
                await source.aclose()
                slot.release()
                state = translator.state
                if state.error is not None and not state.content_emitted:
                    _record_failure(resp_id, state.error)
                elif translator.finish_reason is not None:
                    _record_success(
                        resp_id,
                        t0,
                        translator.usage(),
                        chars=len(state.text),
                        finish_reason=translator.finish_reason,
                    )

        return StreamingResponse(
            sse_gen(),
            media_type="text/event-stream",
            headers=_STREAM_HEADERS,
            background=BackgroundTask(_finish),
        )

    async def health() -> dict[str, Any]:
        return {
            "ok": True,
            "status": "ok",
            "backend": backend.name,
            "in_flight": admission.in_flight,
            "capacity": admission.capacity,
            "credentials": backend.has_credentials(),
            "stats": stats.snapshot(),
        }

    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_route("/healthz", health, methods=["GET"])

    @app.get("/v1/models")
    async def list_models(authorization: str | None = Header(default=None)):
        _check_auth(settings, authorization)
        ids = [model_id for model_id, _ in KNOWN_MODELS]
        if settings.default_model not in ids:
            ids.insert(0, settings.default_model)
        return {"object": "list", "data": [model_entry(model_id, created=started_at) for model_id in ids]}

    @app.get("/v1/models/{model_id}")
    async def get_model(model_id: str, authorization: str | None = Header(default=None)):
        _check_auth(settings, authorization)
        if find_model(model_id) or model_id == settings.default_model or model_id in MODEL_ALIASES:
            return model_entry(model_id, created=started_at)
        raise ModelNotFoundError(f"The model '{model_id}' does not exist", param="model")

    @app.post("/v1/chat/completions")
    async def chat_completions(
        req: ChatCompletionRequest,
        request: Request,
        authorization: str | None = Header(default=None),
    ):
        _check_auth(settings, authorization)
        resp_id = f"chatcmpl-{uuid.uuid4().hex}"
        created = int(time.time())
        t0 = time.time()
        model = resolve_model(req.model, settings.default_model)
        native = convert_request(req, model=model, default_max_tokens=settings.default_max_tokens)
        prompt_text = _check_prompt_size(settings, native)
        logger.info(
            "[%s] request model=%s stream=%s messages=%d tools=%d backend=%s",
            resp_id,
            model,
            req.stream,
            len(req.messages),
            len(native.tools),
            backend.name,
        )

        if req.stream:
            return await _stream(
                request,
                native,
                resp_id=resp_id,
                created=created,
                prompt_text=prompt_text,
                include_usage=_wants_usage(req),
                t0=t0,
            )

        result = await _complete(request, native, resp_id)
        body = assemble_chat_completion(
            result,
            completion_id=resp_id,
            model=model,
            created=created,
            prompt_text=prompt_text,
            suppress_tool_calls=native.suppress_tool_calls,
        )
        _record_success(resp_id, t0, body["usage"], chars=len(result.text), finish_reason=body["choices"][0]["finish_reason"])
        return body

    @app.post("/v1/completions")
    async def completions(
        req: CompletionRequest,
        request: Request,
        authorization: str | None = Header(default=None),
    ):
        _check_auth(settings, authorization)
        if (req.model_extra or {}).get("stream"):
            raise InvalidRequestError(
                "Streaming is not supported on /v1/completions; use /v1/chat/completions", param="stream"
            )
        resp_id = f"cmpl-{uuid.uuid4().hex}"
        created = int(time.time())
        t0 = time.time()
        model = resolve_model(req.model, settings.default_model)
        native = prompt_request(
            req.prompt_text,
            model=model,
            max_tokens=req.max_tokens or settings.default_max_tokens,
            temperature=req.temperature,
            top_p=req.top_p,
        )
        prompt_text = _check_prompt_size(settings, native)
        logger.info("[%s] request model=%s legacy=true backend=%s", resp_id, model, backend.name)

        result = await _complete(request, native, resp_id)
        body = assemble_text_completion(
            result,
            completion_id=resp_id,
            model=model,
            created=created,
            prompt_text=prompt_text,
        )
        _record_success(resp_id, t0, body["usage"], chars=len(result.text), finish_reason=body["choices"][0]["finish_reason"])
        return body

    return app
