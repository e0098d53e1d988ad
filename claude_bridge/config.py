from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

BackendKind = Literal["cli", "api"]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw


def _env_opt(name: str) -> str | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    return raw.strip() or None


def _env_backend() -> BackendKind:
    raw = _env_str("CLAUDE_BRIDGE_BACKEND", "cli").strip().lower()
    if raw in {"api", "direct", "http"}:
        return "api"
    return "cli"


@dataclass(frozen=True)
class Settings:
    host: str = field(default_factory=lambda: _env_str("CLAUDE_BRIDGE_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: _env_int("CLAUDE_BRIDGE_PORT", 8080))

    # If set, requests must include `Authorization: Bearer <token>`.
    bearer_token: str | None = field(default_factory=lambda: _env_opt("CLAUDE_BRIDGE_TOKEN"))

    # `cli` spawns the local agent binary, `api` calls the Messages API directly.
    backend: BackendKind = field(default_factory=_env_backend)
    default_model: str = field(default_factory=lambda: _env_str("DEFAULT_MODEL", "claude-sonnet-4-5-20250929"))
    default_max_tokens: int = field(default_factory=lambda: _env_int("CLAUDE_BRIDGE_MAX_TOKENS", 8192))

    # Claude CLI options.
    claude_bin: str = field(default_factory=lambda: _env_str("CLAUDE_CLI_PATH", "claude"))
    # Headless server: no TTY to answer permission prompts.
    cli_skip_permissions: bool = field(default_factory=lambda: _env_bool("CLAUDE_CLI_SKIP_PERMISSIONS", True))
    # asyncio StreamReader limit; a single stream-json line can carry a whole message.
    subprocess_stream_limit: int = field(
        default_factory=lambda: _env_int("CLAUDE_BRIDGE_STREAM_LIMIT", 8 * 1024 * 1024)
    )

    # Messages API options.
    api_base_url: str = field(default_factory=lambda: _env_str("ANTHROPIC_BASE_URL", "https://api.anthropic.com"))
    api_key: str | None = field(default_factory=lambda: _env_opt("ANTHROPIC_API_KEY"))
    oauth_token: str | None = field(default_factory=lambda: _env_opt("CLAUDE_CODE_OAUTH_TOKEN"))
    oauth_creds_path: str = field(
        default_factory=lambda: _env_str("CLAUDE_OAUTH_CREDS_PATH", "~/.claude/oauth_creds.json")
    )
    oauth_base_url: str = field(
        default_factory=lambda: _env_str("CLAUDE_OAUTH_BASE_URL", "https://console.anthropic.com")
    )
    oauth_client_id: str | None = field(default_factory=lambda: _env_opt("CLAUDE_OAUTH_CLIENT_ID"))
    api_timeout_seconds: int = field(default_factory=lambda: _env_int("CLAUDE_BRIDGE_API_TIMEOUT_SECONDS", 600))

    # Hard safety caps.
    max_prompt_chars: int = field(default_factory=lambda: _env_int("CLAUDE_BRIDGE_MAX_PROMPT_CHARS", 2_000_000))
    timeout_seconds: int = field(default_factory=lambda: _env_int("CLAUDE_BRIDGE_TIMEOUT_SECONDS", 300))
    max_concurrency: int = field(default_factory=lambda: _env_int("MAX_CONCURRENT", 10))
    error_body_max_chars: int = 500

    # 0 disables `: ping` comments while the backend is silent.
    sse_keepalive_seconds: int = field(default_factory=lambda: _env_int("CLAUDE_BRIDGE_SSE_KEEPALIVE_SECONDS", 15))

    # CORS (comma-separated origins). Empty disables CORS.
    cors_origins: str = field(default_factory=lambda: _env_str("CLAUDE_BRIDGE_CORS_ORIGINS", ""))

    log_events: bool = field(default_factory=lambda: _env_bool("CLAUDE_BRIDGE_LOG_EVENTS", False))
    log_render_rich: bool = field(default_factory=lambda: _env_bool("CLAUDE_BRIDGE_LOG_RICH", False))
    log_max_chars: int = field(default_factory=lambda: _env_int("CLAUDE_BRIDGE_LOG_MAX_CHARS", 2000))

    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def load_settings() -> Settings:
    return Settings()
