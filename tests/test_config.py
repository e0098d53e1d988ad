"""Tests for environment configuration, the model catalog and the launcher."""

from __future__ import annotations

import os

import pytest

from claude_bridge import cli
from claude_bridge.catalog import find_model, model_entry, resolve_model
from claude_bridge.config import Settings


class TestSettings:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CLAUDE_BRIDGE_BACKEND", "api")
        monkeypatch.setenv("CLAUDE_BRIDGE_PORT", "9001")
        monkeypatch.setenv("MAX_CONCURRENT", "4")
        monkeypatch.setenv("CLAUDE_CLI_SKIP_PERMISSIONS", "false")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "  ")
        monkeypatch.setenv("CLAUDE_BRIDGE_CORS_ORIGINS", "http://a.test, http://b.test,")
        settings = Settings()
        assert settings.backend == "api"
        assert settings.port == 9001
        assert settings.max_concurrency == 4
        assert settings.cli_skip_permissions is False
        assert settings.api_key is None
        assert settings.cors_origin_list() == ["http://a.test", "http://b.test"]

    def test_defaults(self, monkeypatch):
        for name in ("CLAUDE_BRIDGE_BACKEND", "CLAUDE_BRIDGE_PORT", "MAX_CONCURRENT", "CLAUDE_BRIDGE_TIMEOUT_SECONDS"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings()
        assert settings.backend == "cli"
        assert settings.port == 8080
        assert settings.max_concurrency == 10
        assert settings.timeout_seconds == 300
        assert settings.default_max_tokens == 8192

    def test_bad_integer_falls_back(self, monkeypatch):
        monkeypatch.setenv("CLAUDE_BRIDGE_PORT", "eighty")
        assert Settings().port == 8080


class TestCatalog:
    @pytest.mark.parametrize(
        "requested,expected",
        [
            (None, "default-model"),
            ("", "default-model"),
            ("gpt-4o", "default-model"),
            ("sonnet", "claude-sonnet-4-5-20250929"),
            ("haiku", "claude-haiku-3-5-20241022"),
            ("claude-opus-4-6", "claude-opus-4-6"),
            ("my-custom-model", "my-custom-model"),
        ],
    )
    def test_resolve_model(self, requested, expected):
        assert resolve_model(requested, "default-model") == expected

    def test_find_and_entry(self):
        assert find_model("claude-opus-4-6") == "claude-opus-4-6"
        assert find_model("gpt-4") is None
        assert model_entry("x", created=5) == {"id": "x", "object": "model", "created": 5, "owned_by": "anthropic"}


class TestLauncher:
    def test_dotenv_does_not_override(self, tmp_path, monkeypatch):
        env = tmp_path / ".env"
        env.write_text("# comment\nexport CB_TEST_A='quoted'\nCB_TEST_B=plain\nbroken line\n", encoding="utf-8")
        monkeypatch.setenv("CB_TEST_B", "already")
        monkeypatch.delenv("CB_TEST_A", raising=False)
        assert cli._maybe_load_dotenv(env) is True
        assert os.environ["CB_TEST_A"] == "quoted"
        assert os.environ["CB_TEST_B"] == "already"
        monkeypatch.delenv("CB_TEST_A")

    def test_main_selects_backend_and_runs_factory(self, monkeypatch):
        calls = []
        monkeypatch.setattr(cli.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
        monkeypatch.setenv("CLAUDE_BRIDGE_BACKEND", "cli")

        cli.main(["direct", "--no-env", "--port", "9100"])

        assert os.environ["CLAUDE_BRIDGE_BACKEND"] == "api"
        app, kwargs = calls[0]
        assert app == "claude_bridge.server:create_app"
        assert kwargs["factory"] is True
        assert kwargs["port"] == 9100

    def test_unknown_backend_exits(self, monkeypatch):
        monkeypatch.setattr(cli.uvicorn, "run", lambda *a, **k: None)
        with pytest.raises(SystemExit):
            cli.main(["gemini", "--no-env"])

    def test_missing_env_file_exits(self, tmp_path, monkeypatch):
        monkeypatch.setattr(cli.uvicorn, "run", lambda *a, **k: None)
        with pytest.raises(SystemExit):
            cli.main(["--env-file", str(tmp_path / "nope.env")])
