from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

logger = logging.getLogger("uvicorn.error")

STATS_INTERVAL_SECONDS = 60

_RICH_CONSOLE: Console | None = None


def _console() -> Console:
    global _RICH_CONSOLE
    if _RICH_CONSOLE is None:
        _RICH_CONSOLE = Console(stderr=True)
    return _RICH_CONSOLE


def truncate_for_log(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n... (truncated, {len(text)} chars total)"


def short_id(resp_id: str) -> str:
    """Extract short ID from chatcmpl-xxx / cmpl-xxx format."""
    _, sep, rest = resp_id.partition("cmpl-")
    return (rest if sep else resp_id)[:8]


@dataclass
class RequestStats:
    """Counters for the current reporting window, also served on /health.

    Failures are kept per HTTP status so admission rejections (429), timeouts
    (504) and disconnects (499) can be told apart from backend errors.
    """

    succeeded: int = 0
    failures: Counter[int] = field(default_factory=Counter)
    duration_ms: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    window_start: float = field(default_factory=time.time)

    @property
    def failed(self) -> int:
        return sum(self.failures.values())

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    def record_success(self, duration_ms: int, usage: dict[str, int] | None) -> None:
        self.succeeded += 1
        self.duration_ms += duration_ms
        if usage:
            self.prompt_tokens += usage.get("prompt_tokens", 0)
            self.completion_tokens += usage.get("completion_tokens", 0)

    def record_failure(self, status_code: int) -> None:
        self.failures[status_code] += 1

    def avg_duration_ms(self) -> float:
        return self.duration_ms / self.succeeded if self.succeeded else 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_requests": self.total,
            "successful_requests": self.succeeded,
            "failed_requests": self.failed,
            "failures_by_status": {str(code): n for code, n in sorted(self.failures.items())},
            "avg_duration_ms": round(self.avg_duration_ms()),
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
        }

    def reset(self) -> "RequestStats":
        """Close the current window and return it; counting restarts from zero."""
        window = replace(self, failures=Counter(self.failures))
        self.succeeded = 0
        self.failures.clear()
        self.duration_ms = 0
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.window_start = time.time()
        return window


def maybe_print_stats(stats: RequestStats, *, rich_enabled: bool) -> None:
    """Print a stats summary once per interval, then start a new window."""
    elapsed = time.time() - stats.window_start
    if elapsed < STATS_INTERVAL_SECONDS or stats.total == 0:
        return

    window = stats.reset()
    failures = " ".join(f"{code}={n}" for code, n in sorted(window.failures.items())) or "-"
    if not rich_enabled:
        logger.info(
            "stats (last %ds): requests=%d success=%d failed=%d (%s) avg_ms=%.0f tokens=%d",
            int(elapsed),
            window.total,
            window.succeeded,
            window.failed,
            failures,
            window.avg_duration_ms(),
            window.prompt_tokens + window.completion_tokens,
        )
        return

    table = Table(title=f"Stats Summary (last {int(elapsed)}s)", border_style="dim")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Total Requests", str(window.total))
    table.add_row("Successful", str(window.succeeded))
    table.add_row("Failed", f"{window.failed} ({failures})")
    table.add_row("Avg Duration", f"{window.avg_duration_ms():.0f}ms")
    table.add_row("Prompt Tokens", f"{window.prompt_tokens:,}")
    table.add_row("Completion Tokens", f"{window.completion_tokens:,}")
    _console().print(table)


def print_error_panel(resp_id: str, error_msg: str, status_code: int = 500) -> None:
    """Print error in a red panel for visibility."""
    _console().print(
        Panel(
            Text(error_msg, style="bold white"),
            title=f"Error [{short_id(resp_id)}] HTTP {status_code}",
            border_style="red",
            expand=False,
        )
    )


def print_separator(resp_id: str, *, label: str = "REQUEST", model: str | None = None, active: int = 0) -> None:
    parts = [label]
    if model:
        parts.append(f"model={model}")
    parts.append(f"[{short_id(resp_id)}]")
    if active > 1:
        parts.append(f"{active} concurrent")
    _console().print(Rule(" ".join(parts), style="bold blue"))
