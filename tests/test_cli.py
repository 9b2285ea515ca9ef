"""
Tests for CLI commands.
"""

import json
import stat
from pathlib import Path
from unittest.mock import patch

import pytest
from rich.console import Console
from typer.testing import CliRunner

from aiobscura.cli import app
from aiobscura.collector.models import RegisterResponse
from aiobscura.exceptions import NetworkError

# Disable Rich formatting in tests using NO_COLOR environment variable
runner = CliRunner(env={"NO_COLOR": "1", "TERM": "dumb"})


@pytest.fixture(autouse=True)
def wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tables from wrapping at the default 80 columns."""
    monkeypatch.setattr("aiobscura.cli.console", Console(width=200, no_color=True))


@pytest.fixture
def agents_config(write_config, claude_root: Path, codex_root: Path) -> Path:
    return write_config(
        f'[agents]\nclaude_code_path = "{claude_root}"\ncodex_path = "{codex_root}"\n'
    )


@pytest.fixture
def synced(agents_config, claude_log) -> str:
    """A Claude Code session ingested through ``aiobscura sync``."""
    log = claude_log("sess-cli-0001")
    log.write(log.user("Add a health endpoint"), log.assistant(text="Added /health."))
    result = runner.invoke(app, ["sync"])
    assert result.exit_code == 0, result.output
    return log.session_id


def test_version():
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert "aiobscura 0.4.0" in result.stdout


class TestSyncCommand:
    """Tests for sync command."""

    def test_sync_ingests_new_content(self, synced, isolated_env: Path):
        assert (isolated_env / ".local" / "share" / "aiobscura" / "data.db").exists()

        result = runner.invoke(app, ["sync"])

        assert result.exit_code == 0
        assert "0 messages" in result.stdout

    def test_first_sync_reports_messages(self, agents_config, claude_log):
        log = claude_log("sess-cli-0002")
        log.write(log.user("hello"), log.assistant())

        result = runner.invoke(app, ["sync", "-v"])

        assert result.exit_code == 0
        assert "Claude Code" in result.stdout
        assert "2 messages, 1 new sessions" in result.stdout
        assert "sess-cli-0002.jsonl: +2 messages" in result.stdout

    def test_dry_run_writes_nothing(self, agents_config, claude_log, isolated_env: Path):
        log = claude_log("sess-cli-0003")
        log.write(log.user("hello"))

        result = runner.invoke(app, ["sync", "--dry-run"])

        assert result.exit_code == 0
        assert "Dry run" in result.stdout
        assert not (isolated_env / ".local" / "share" / "aiobscura" / "data.db").exists()

    def test_no_assistants_installed(self, write_config, tmp_path: Path):
        write_config(
            f'[agents]\nclaude_code_path = "{tmp_path / "none"}"\n'
            f'codex_path = "{tmp_path / "none"}"\n'
        )

        result = runner.invoke(app, ["sync"])

        assert result.exit_code == 0
        assert "No supported assistants" in result.stdout

    @pytest.mark.parametrize(
        "content",
        ["[collector\nenabled = true\n", "[collector]\nbatch_size = 0\n"],
    )
    def test_invalid_config_exits_nonzero(self, write_config, content: str):
        write_config(content)

        result = runner.invoke(app, ["sync"])

        assert result.exit_code == 1
        assert "Config error" in result.stdout


class TestAnalyzeCommand:
    def test_list_plugins(self, write_config):
        write_config('[analytics]\ndisabled_plugins = ["core.outcome"]\n')

        result = runner.invoke(app, ["analyze", "--list-plugins"])

        assert result.exit_code == 0
        assert "core.first_order" in result.stdout
        assert "core.edit_churn" in result.stdout
        lines = [line for line in result.stdout.splitlines() if "core.outcome" in line]
        assert "no" in lines[0].split()

    def test_analyze_session_by_prefix(self, synced):
        result = runner.invoke(app, ["analyze", "--session", "sess-cli", "--format", "json"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["session_id"] == synced
        assert {run["plugin"] for run in payload["runs"]} == {
            "core.first_order",
            "core.edit_churn",
            "core.outcome",
        }
        assert all(run["status"] == "success" for run in payload["runs"])

    def test_unknown_session(self, synced):
        result = runner.invoke(app, ["analyze", "--session", "nope"])

        assert result.exit_code == 1
        assert "Session not found: nope" in result.stdout

    def test_unknown_format(self):
        result = runner.invoke(app, ["analyze", "--format", "xml"])

        assert result.exit_code == 1


class TestMetricsCommand:
    def test_lists_registry(self):
        result = runner.invoke(app, ["metrics"])

        assert result.exit_code == 0
        assert "tokens_in" in result.stdout

    def test_search_without_matches(self):
        result = runner.invoke(app, ["metrics", "zzzz"])

        assert result.exit_code == 0
        assert "No metrics match 'zzzz'" in result.stdout


class TestWrappedCommand:
    def test_empty_period(self, write_config):
        write_config("")

        result = runner.invoke(app, ["wrapped", "--year", "2024"])

        assert result.exit_code == 0
        assert "aiobscura wrapped: 2024" in result.stdout
        assert "No sessions in this period." in result.stdout

    def test_invalid_month(self):
        result = runner.invoke(app, ["wrapped", "--year", "2024", "--month", "13"])

        assert result.exit_code == 1
        assert "Invalid month" in result.stdout


class TestAssessCommand:
    def test_requires_llm_section(self, synced):
        result = runner.invoke(app, ["assess", synced])

        assert result.exit_code == 1
        assert "No [llm] section" in result.stdout


class TestCollectorCommands:
    """Tests for collector subcommands."""

    def test_status_not_ready(self):
        result = runner.invoke(app, ["collector", "status"])

        assert result.exit_code == 0
        assert "Not ready" in result.stdout

    def test_status_ready(self, write_config):
        write_config(
            '[collector]\nenabled = true\nserver_url = "https://collector.test"\n'
            'collector_id = "col-1"\napi_key = "key-1"\n'
        )

        result = runner.invoke(app, ["collector", "status"])

        assert result.exit_code == 0
        assert "Ready to publish" in result.stdout
        assert "key-1" not in result.stdout

    def test_register_stores_credentials(self, write_config):
        config_path = write_config("[analytics]\ntool_call_threshold = 7\n")
        registered = RegisterResponse(
            collector_id="col-9", api_key="cs_live_abc", api_key_prefix="cs_live"
        )

        with patch("aiobscura.collector.client.register_collector", return_value=registered):
            result = runner.invoke(
                app,
                ["collector", "register", "--server-url", "https://c.test", "--workspace-id", "ws-1"],
            )

        assert result.exit_code == 0, result.output
        assert "Registered collector col-9" in result.stdout
        assert stat.S_IMODE(config_path.stat().st_mode) == 0o600
        content = config_path.read_text()
        assert 'collector_id = "col-9"' in content
        assert "tool_call_threshold = 7" in content

    def test_register_refuses_to_overwrite(self, write_config):
        write_config('[collector]\ncollector_id = "col-1"\napi_key = "key-1"\n')

        with patch("aiobscura.collector.client.register_collector") as register:
            result = runner.invoke(
                app,
                ["collector", "register", "--server-url", "https://c.test", "--workspace-id", "ws-1"],
            )

        assert result.exit_code == 1
        assert "already exist" in result.stdout
        register.assert_not_called()

    def test_register_network_failure(self, write_config):
        write_config("")

        with patch(
            "aiobscura.collector.client.register_collector",
            side_effect=NetworkError("HTTP 403: forbidden", status_code=403),
        ):
            result = runner.invoke(
                app,
                ["collector", "register", "--server-url", "https://c.test", "--workspace-id", "ws-1"],
            )

        assert result.exit_code == 1
        assert "Registration failed" in result.stdout

    def test_sessions_without_database(self):
        result = runner.invoke(app, ["collector", "sessions"])

        assert result.exit_code == 0
        assert "Database not found" in result.stdout

    def test_resume_when_not_configured(self):
        result = runner.invoke(app, ["collector", "resume"])

        assert result.exit_code == 0
        assert "Collector is not configured" in result.stdout
