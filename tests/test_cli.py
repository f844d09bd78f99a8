"""Tests for the command line interface."""

from typer.testing import CliRunner

from workspace_engine import __version__
from workspace_engine.cli import app

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_deps_without_manifest(tmp_path):
    result = runner.invoke(app, ["deps", str(tmp_path)])

    assert result.exit_code == 0
    assert "No workflow.yml" in result.output


def test_deps_lists_skipped_packages(tmp_path):
    (tmp_path / "workflow.yml").write_text("dependencies:\n  - name: ripgrep\n    type: cargo\n")

    result = runner.invoke(app, ["deps", str(tmp_path)])

    assert result.exit_code == 0
    assert "ripgrep" in result.output
    assert "skipped" in result.output
