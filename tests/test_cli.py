"""Tests for the propeng CLI."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from proposal_engine.cli import main


@pytest.fixture
def runner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    monkeypatch.setenv("PROPOSAL_ENGINE_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("PROPOSAL_ENGINE_ORACLE_URL", raising=False)
    return CliRunner()


def _last_word(output: str, prefix: str) -> str:
    line = next(line for line in output.splitlines() if line.startswith(prefix))
    return line.split()[-1]


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_init(runner: CliRunner, tmp_path: Path) -> None:
    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    assert "initialized" in result.output.lower()
    assert (tmp_path / "home" / "data" / "engine.db").exists()


def test_empty_agent_list(runner: CliRunner) -> None:
    result = runner.invoke(main, ["agent", "list"])
    assert result.exit_code == 0
    assert "No agents registered" in result.output


def test_empty_history(runner: CliRunner) -> None:
    result = runner.invoke(main, ["history"])
    assert result.exit_code == 0
    assert "No metrics yet" in result.output


def test_proposal_flow(runner: CliRunner) -> None:
    result = runner.invoke(main, ["agent", "add", "Ada", "--specialty", "Finance"])
    assert result.exit_code == 0
    agent_id = _last_word(result.output, "Registered")

    result = runner.invoke(main, ["propose", "Cut travel costs", "--specialty", "Finance"])
    assert result.exit_code == 0
    proposal_id = _last_word(result.output, "Proposal submitted")

    result = runner.invoke(main, ["evaluate", proposal_id, agent_id, "--score", "9"])
    assert result.exit_code == 0
    assert "9.00" in result.output

    result = runner.invoke(main, ["consensus", proposal_id])
    assert result.exit_code == 0
    assert "Consensus: 9.00" in result.output
    assert "Variance: 0.000 (Low)" in result.output

    result = runner.invoke(main, ["decide", proposal_id])
    assert result.exit_code == 0
    assert "Outcome: accepted" in result.output

    result = runner.invoke(main, ["decide", proposal_id])
    assert "already decided" in result.output


def test_task_flow(runner: CliRunner) -> None:
    runner.invoke(main, ["agent", "add", "Ada", "--specialty", "Finance", "--capability", "audit"])

    result = runner.invoke(main, ["allocate", "Quarterly audit", "--capability", "audit"])
    assert result.exit_code == 0
    assert "assigned to Ada" in result.output
    task_id = result.output.split()[1]

    result = runner.invoke(main, ["task-status", task_id, "completed"])
    assert result.exit_code == 0
    assert "completed" in result.output

    result = runner.invoke(main, ["metrics", "--days", "1"])
    assert result.exit_code == 0
    assert "1 completed" in result.output
    assert "Resource utilization: Low" in result.output

    result = runner.invoke(main, ["history"])
    assert result.exit_code == 0
    assert "Metrics History" in result.output


def test_agent_caps(runner: CliRunner) -> None:
    result = runner.invoke(main, ["agent", "add", "Ada", "--specialty", "Finance"])
    agent_id = _last_word(result.output, "Registered")

    result = runner.invoke(main, ["agent", "caps", agent_id, "--capability", "audit"])
    assert result.exit_code == 0
    assert "audit" in result.output


def test_engine_error_exits_nonzero(runner: CliRunner) -> None:
    result = runner.invoke(main, ["decide", "missing"])
    assert result.exit_code == 1
    assert "NOT_FOUND" in result.output


def test_allocate_without_agents(runner: CliRunner) -> None:
    result = runner.invoke(main, ["allocate", "Audit"])
    assert result.exit_code == 1
    assert "NO_ELIGIBLE_AGENTS" in result.output
