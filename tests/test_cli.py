from __future__ import annotations

import allure
from typer.testing import CliRunner

from dlengine._version import __version__
from dlengine.cli import app

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Entry Point"),
]

runner = CliRunner()


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_presets_are_listed() -> None:
    result = runner.invoke(app, ["presets"])
    assert result.exit_code == 0
    assert "default" in result.output
    assert "mp3" in result.output
