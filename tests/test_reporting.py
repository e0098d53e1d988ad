"""Tests for request statistics and log helpers."""

from __future__ import annotations

import logging

from claude_bridge import reporting
from claude_bridge.reporting import RequestStats, maybe_print_stats, short_id, truncate_for_log


class TestRequestStats:
    def test_failures_are_counted_per_status(self):
        stats = RequestStats()
        stats.record_success(100, {"prompt_tokens": 5, "completion_tokens": 2})
        stats.record_success(300, None)
        stats.record_failure(429)
        stats.record_failure(504)
        stats.record_failure(429)

        snapshot = stats.snapshot()
        assert snapshot["total_requests"] == 5
        assert snapshot["successful_requests"] == 2
        assert snapshot["failed_requests"] == 3
        assert snapshot["failures_by_status"] == {"429": 2, "504": 1}
        assert snapshot["avg_duration_ms"] == 200
        assert snapshot["prompt_tokens"] == 5

    def test_reset_returns_closed_window(self):
        stats = RequestStats()
        stats.record_failure(502)
        window = stats.reset()
        stats.record_failure(504)
        assert dict(window.failures) == {502: 1}
        assert dict(stats.failures) == {504: 1}
        assert stats.succeeded == 0

    def test_summary_logged_once_per_interval(self, caplog, monkeypatch):
        stats = RequestStats()
        stats.record_failure(499)
        maybe_print_stats(stats, rich_enabled=False)
        assert stats.total == 1

        monkeypatch.setattr(reporting, "STATS_INTERVAL_SECONDS", 0)
        with caplog.at_level(logging.INFO, logger="uvicorn.error"):
            maybe_print_stats(stats, rich_enabled=False)
        assert "failed=1 (499=1)" in caplog.text
        assert stats.total == 0


def test_truncate_for_log():
    assert truncate_for_log("abc", 10) == "abc"
    assert truncate_for_log("abcdef", 3).startswith("abc\n... (truncated, 6 chars total)")
    assert truncate_for_log("abc", 0) == ""


def test_short_id():
    assert short_id("chatcmpl-0123456789abcdef") == "01234567"
    assert short_id("cmpl-feedbeef99") == "feedbeef"
