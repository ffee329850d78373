"""Tests for the `provider-shim` CLI.

Uses typer's CliRunner for isolated testing without subprocesses.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from provider_shim import __version__
from provider_shim.cli import app, render_env

runner = CliRunner()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("OPENROUTER_API_KEY", "SHIM_PORT", "SHIM_MERGE_MODE", "SHIM_PROVIDER_ONLY"):
        monkeypatch.delenv(var, raising=False)


class TestVersion:
    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"provider-shim {__version__}" in result.output


class TestPrintEnv:
    def test_defaults(self) -> None:
        result = runner.invoke(app, ["print-env"])
        assert result.exit_code == 0
        assert 'export ANTHROPIC_BASE_URL="http://127.0.0.1:8787"' in result.stdout
        assert 'export OPENAI_BASE_URL="http://127.0.0.1:8787/v1"' in result.stdout
        assert 'export ANTHROPIC_MODEL="moonshotai/kimi-k2.5"' in result.stdout

    def test_custom_host_port(self) -> None:
        result = runner.invoke(app, ["print-env", "--host", "0.0.0.0", "--port", "9000"])
        assert result.exit_code == 0
        assert "http://0.0.0.0:9000" in result.stdout
        assert 'export SHIM_PORT="9000"' in result.stdout

    def test_render_sections(self) -> None:
        text = render_env("localhost", 1234, model="z-ai/glm-4.6")
        assert "=== Claude Code (Explicit Control) ===" in text
        assert "=== Windows PowerShell (Automatic) ===" in text
        assert '$env:ANTHROPIC_MODEL="z-ai/glm-4.6"' in text
        assert 'export ANTHROPIC_AUTH_TOKEN="$OPENROUTER_API_KEY"' in text


class TestServeErrors:
    def test_missing_config_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["serve", "--config", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_invalid_merge_mode(self) -> None:
        result = runner.invoke(app, ["serve", "--merge-mode", "sometimes"])
        assert result.exit_code == 1
        assert "merge_mode" in result.output

    def test_invalid_max_price(self) -> None:
        result = runner.invoke(app, ["serve", "--max-price", "{cheap"])
        assert result.exit_code == 1
        assert "--max-price" in result.output


class TestDoctor:
    def test_reports_policy_without_key(self, tmp_path: Path) -> None:
        config = tmp_path / "shim.yaml"
        config.write_text("merge_mode: strict\npolicy:\n  only: [fireworks]\n")
        result = runner.invoke(app, ["doctor", "--config", str(config)])
        assert result.exit_code == 0
        assert "merge_mode: strict" in result.output
        assert "fireworks" in result.output
        assert "No OpenRouter API key configured" in result.output
        assert "Configuration is valid" in result.output

    def test_key_never_printed(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_check(base_url: str, api_key: str) -> tuple[bool, str]:
            return True, "available models: 3"

        monkeypatch.setattr("provider_shim.cli.check_connectivity", fake_check)
        result = runner.invoke(app, ["doctor", "--upstream-key", "sk-or-very-secret"])
        assert result.exit_code == 0
        assert "sk-or-very-secret" not in result.output
        assert "available models: 3" in result.output

    def test_bad_config_exits(self, tmp_path: Path) -> None:
        config = tmp_path / "shim.yaml"
        config.write_text("port: not-a-port\n")
        result = runner.invoke(app, ["doctor", "--config", str(config)])
        assert result.exit_code == 1
        assert "port" in result.output
