"""Tests for the concilium CLI."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from concilium.cli.main import cli
from concilium.core.errors import PipelineError
from concilium.core.orchestrator import ConsoleEvents, NullEvents
from concilium.core.storage import JsonRunRepository
from concilium.formatters.report import NO_SYNTHESIS


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("CONCILIUM_DATA_DIR", str(tmp_path / "data"))
    for name in ("OPENROUTER_API_KEY", "OPENROUTER_API_URL", "COUNCIL_MODELS", "CHAIRMAN_MODEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestRun:
    @patch("concilium.cli.main.run_deliberation", new_callable=AsyncMock)
    def test_requires_prompt(self, mock_run, runner):
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == 1
        mock_run.assert_not_called()

    @patch("concilium.cli.main.run_deliberation", new_callable=AsyncMock)
    def test_markdown_report(self, mock_run, runner, sample_record, tmp_path):
        mock_run.return_value = sample_record
        result = runner.invoke(cli, ["run", "Add", "a", "cache", "layer", "--cwd", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "# Concilium Deliberation" in result.output
        config, run_input, save, events = mock_run.call_args.args
        assert run_input.prompt == "Add a cache layer"
        assert run_input.cwd == str(tmp_path.resolve())
        assert [i.instance_id for i in run_input.agent_instances] == ["claude", "codex", "opencode"]
        assert run_input.stage1_only is False
        assert save is True
        assert isinstance(events, ConsoleEvents)
        assert config["data_dir"] == str(tmp_path / "data")

    @patch("concilium.cli.main.run_deliberation", new_callable=AsyncMock)
    def test_json_format(self, mock_run, runner, sample_record):
        mock_run.return_value = sample_record
        result = runner.invoke(cli, ["run", "prompt", "--format", "json", "--no-save"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["id"] == "run-1"
        _, _, save, events = mock_run.call_args.args
        assert save is False
        assert isinstance(events, NullEvents)

    @patch("concilium.cli.main.run_deliberation", new_callable=AsyncMock)
    def test_agent_and_council_overrides(self, mock_run, runner, sample_record):
        mock_run.return_value = sample_record
        result = runner.invoke(
            cli,
            [
                "run",
                "prompt",
                "--agents",
                "claude:opus,codex,codex",
                "--juror-models",
                "a/x, b/y",
                "--chairman",
                "c/z",
                "--stage1-only",
            ],
        )

        assert result.exit_code == 0, result.output
        config, run_input, _, _ = mock_run.call_args.args
        assert config["council"]["council_models"] == ["a/x", "b/y"]
        assert config["council"]["chairman_model"] == "c/z"
        assert [i.instance_id for i in run_input.agent_instances] == ["claude", "codex", "codex-2"]
        assert run_input.agent_instances[0].model == "opus"
        assert run_input.stage1_only is True

    @patch("concilium.cli.main.run_deliberation", new_callable=AsyncMock)
    def test_unknown_agent(self, mock_run, runner):
        result = runner.invoke(cli, ["run", "prompt", "--agents", "gemini"])
        assert result.exit_code == 1
        mock_run.assert_not_called()

    @patch("concilium.cli.main.run_deliberation", new_callable=AsyncMock)
    def test_pipeline_error_exits_nonzero(self, mock_run, runner):
        mock_run.side_effect = PipelineError("All agents failed", code="NO_RESPONSES")
        result = runner.invoke(cli, ["run", "prompt", "--format", "json", "--no-save"])
        assert result.exit_code == 1

    @patch("concilium.cli.main.run_deliberation", new_callable=AsyncMock)
    def test_prompt_file_and_output(self, mock_run, runner, sample_record, tmp_path):
        mock_run.return_value = sample_record
        prompt_file = tmp_path / "prompt.md"
        prompt_file.write_text("Refactor the parser\n", encoding="utf-8")
        answer = tmp_path / "answer.md"

        result = runner.invoke(
            cli, ["run", "-f", str(prompt_file), "-o", str(answer), "--format", "plain"]
        )

        assert result.exit_code == 0, result.output
        assert mock_run.call_args.args[1].prompt == "Refactor the parser"
        assert answer.read_text(encoding="utf-8") == NO_SYNTHESIS

    @patch("concilium.cli.main.run_deliberation", new_callable=AsyncMock)
    def test_prompt_from_stdin(self, mock_run, runner, sample_record):
        mock_run.return_value = sample_record
        result = runner.invoke(cli, ["run", "-f", "-", "--format", "plain"], input="from stdin\n")
        assert result.exit_code == 0, result.output
        assert mock_run.call_args.args[1].prompt == "from stdin"

    @patch("concilium.cli.main.run_deliberation", new_callable=AsyncMock)
    def test_missing_config_file(self, mock_run, runner, tmp_path):
        result = runner.invoke(cli, ["run", "prompt", "--config", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 1
        mock_run.assert_not_called()


class TestHistory:
    def test_empty(self, runner):
        result = runner.invoke(cli, ["history"])
        assert result.exit_code == 0
        assert "No runs found." in result.output

    def test_lists_runs(self, runner, sample_record, tmp_path):
        JsonRunRepository(tmp_path / "data").save(sample_record)
        result = runner.invoke(cli, ["history"])
        assert result.exit_code == 0
        assert "run-1" in result.output
        assert "partial_error" in result.output

    def test_json_list(self, runner, sample_record, tmp_path):
        JsonRunRepository(tmp_path / "data").save(sample_record)
        result = runner.invoke(cli, ["history", "--json"])
        data = json.loads(result.output)
        assert data[0]["id"] == "run-1"
        assert data[0]["prompt_preview"] == "Add a cache layer"

    def test_show_run(self, runner, sample_record, tmp_path):
        JsonRunRepository(tmp_path / "data").save(sample_record)
        result = runner.invoke(cli, ["history", "run-1"])
        assert result.exit_code == 0
        assert "**Run:** run-1" in result.output

    def test_show_missing_run(self, runner):
        result = runner.invoke(cli, ["history", "nope"])
        assert result.exit_code == 1


class TestModels:
    def test_agent_models(self, runner):
        result = runner.invoke(cli, ["models", "--agent", "codex", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data[0]["provider"] == "codex"
        assert "gpt-5.2-codex" in data[0]["models"]

    @patch("concilium.providers.openrouter.OpenRouterGateway.fetch_models", new_callable=AsyncMock)
    def test_council_models(self, mock_fetch, runner, priced_models):
        mock_fetch.return_value = priced_models
        result = runner.invoke(cli, ["models", "--council"])
        assert result.exit_code == 0, result.output
        assert "judge/one" in result.output
        assert "$2.00 / $10.00" in result.output
        assert "Free" in result.output


class TestVersion:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "1.0.0" in result.output
