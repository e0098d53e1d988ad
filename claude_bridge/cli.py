import argparse
import os
from pathlib import Path

import uvicorn


def _normalize_backend(raw: str | None) -> str | None:
    if not raw:
        return None
    v = raw.strip().lower()
    if v in {"cli", "claude", "agent"}:
        return "cli"
    if v in {"api", "direct", "http"}:
        return "api"
    return None


def _maybe_load_dotenv(path: Path) -> bool:
    if not path.exists() or not path.is_file():
        return False
    for raw_line in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if value and value[0] in {"'", '"'} and value[-1] == value[0]:
            value = value[1:-1]
        os.environ.setdefault(key, value)
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claude-bridge",
        description="Serve Claude behind an OpenAI-compatible /v1 API.",
    )
    parser.add_argument(
        "backend",
        nargs="?",
        default=None,
        help="Execution backend: cli (local `claude` agent) or api (Messages API).",
    )
    parser.add_argument(
        "--host",
        default=os.environ.get("CLAUDE_BRIDGE_HOST", "127.0.0.1"),
        help="Bind host (default: 127.0.0.1).",
    )
    parser.add_argument(
        "--port",
        default=int(os.environ.get("CLAUDE_BRIDGE_PORT", "8080")),
        type=int,
        help="Bind port (default: 8080).",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable uvicorn reload (dev only).",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("CLAUDE_BRIDGE_LOG_LEVEL", "info"),
        help="Uvicorn log level (default: info).",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Load environment variables from this .env file (default: ./.env if present).",
    )
    parser.add_argument(
        "--no-env",
        action="store_true",
        help="Do not load any .env file.",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.no_env:
        path = Path(args.env_file) if args.env_file else Path.cwd() / ".env"
        if _maybe_load_dotenv(path):
            print(f"[claude-bridge] loaded env: {path}")
        elif args.env_file:
            raise SystemExit(f"env file not found: {path}")

    if args.backend:
        backend = _normalize_backend(args.backend)
        if backend is None:
            raise SystemExit(f"Unknown backend: {args.backend} (expected cli or api)")
        os.environ["CLAUDE_BRIDGE_BACKEND"] = backend

    uvicorn.run(
        "claude_bridge.server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


__all__ = ["main"]
