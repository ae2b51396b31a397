from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from rewatch.cli import cli
from tests.conftest import show_output

runner = CliRunner()

CONFIG = """
rules:
  tests:
    patterns: "src/**/*.py, !src/generated"
    command: echo @relfile
  server:
    patterns: ["src/**/*.py"]
    mode: restart
    command: sleep 30
"""


@pytest.fixture
def config(tmp_path: Path) -> Path:
    path = tmp_path / "rewatch.yaml"
    path.write_text(CONFIG)
    return path


def test_dry_run_prints_config(config: Path) -> None:
    result = runner.invoke(cli, ("--config", str(config), "--dry"))
    show_output(result)

    assert result.exit_code == 0
    assert "Configuration" in result.output
    assert "src/generated" in result.output


def test_dry_run_with_selected_rule(config: Path) -> None:
    result = runner.invoke(cli, ("server", "--config", str(config), "--dry"))
    show_output(result)

    assert result.exit_code == 0


def test_unknown_rule(config: Path) -> None:
    result = runner.invoke(cli, ("nope", "--config", str(config), "--dry"))
    show_output(result)

    assert result.exit_code == 1
    assert "No rule named 'nope'" in result.output
    assert "tests" in result.output
    assert "server" in result.output


def test_invalid_config(tmp_path: Path) -> None:
    path = tmp_path / "rewatch.yaml"
    path.write_text("rules:\n  a:\n    patterns: ['*']\n    mode: reload\n")

    result = runner.invoke(cli, ("--config", str(path)))
    show_output(result)

    assert result.exit_code == 1
    assert "ERROR" in result.output
    assert "mode" in result.output


def test_config_file_is_found_in_parent_directories(
    config: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    nested = config.parent / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = runner.invoke(cli, ("--dry",))
    show_output(result)

    assert result.exit_code == 0
    assert "Configuration" in result.output


def test_missing_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".git").mkdir()
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(cli, ("--dry",))
    show_output(result)

    assert result.exit_code == 1
    assert "Failed to find a rewatch config file" in result.output
