import os

import pytest
from click.testing import CliRunner as ClickRunner

from switchboard.cli import main


@pytest.fixture
def config_home(tmp_path, monkeypatch):
    for name in list(os.environ):
        if name.startswith("SWITCHBOARD_") or name in ("ANTHROPIC_API_KEY", "GEMINI_API_KEY"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)
    return tmp_path / "xdg" / "switchboard"


def test_providers_lists_default_agent(config_home):
    result = ClickRunner().invoke(main, ["providers"])
    assert result.exit_code == 0
    assert result.output.startswith("agent\tagent\tAgent")
    assert (config_home / "config.toml").exists()


def test_send_to_unknown_provider_exits_with_error(config_home):
    result = ClickRunner().invoke(main, ["send", "nope:model", "hello", "--thread", "t1"])
    assert result.exit_code == 1
    assert "[user]" not in result.output
    assert "Unknown provider: nope" in result.output


def test_models_for_unknown_provider(config_home):
    result = ClickRunner().invoke(main, ["models", "nope"])
    assert result.exit_code == 1
    assert "Unknown provider: nope" in result.output
