import os
from pathlib import Path

import pytest

from switchboard.config import ConfigLoader
from switchboard.models.base import ConfigurationError
from switchboard.models.credentials import CredentialsManager
from switchboard.models.registry import (
    AgentProvider,
    CliProvider,
    CliStyle,
    HttpProvider,
    ProviderRegistry,
    SessionProvider,
    normalize_model_list,
)

VENDOR_ENV = ("ANTHROPIC_API_KEY", "GEMINI_API_KEY", "GOOGLE_GENERATIVE_AI_API_KEY")


@pytest.fixture
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("SWITCHBOARD_") or name in VENDOR_ENV:
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _write_config(global_dir: Path, text: str) -> ConfigLoader:
    global_dir.mkdir(parents=True, exist_ok=True)
    (global_dir / "config.toml").write_text(text, encoding="utf-8")
    return ConfigLoader(global_dir=global_dir, project_dir=global_dir / "no-project")


def test_first_run_writes_defaults(tmp_path: Path, clean_env) -> None:
    config = ConfigLoader(global_dir=tmp_path / "cfg", project_dir=tmp_path / "none")
    assert (tmp_path / "cfg" / "config.toml").exists()
    creds = tmp_path / "cfg" / "credentials.toml"
    assert creds.exists()
    if os.name == "posix":
        assert creds.stat().st_mode & 0o077 == 0
    assert config.get_bool("orchestrator.steer_enabled") is True
    assert config.get("orchestrator.agent_provider") == "agent"


def test_project_config_and_env_override(tmp_path: Path, clean_env) -> None:
    project = tmp_path / "proj" / ".switchboard"
    project.mkdir(parents=True)
    (project / "config.toml").write_text('[orchestrator]\ndefault_model = "claude:claude-opus-4-5"\n')
    clean_env.setenv("SWITCHBOARD_ORCHESTRATOR_STEER_ENABLED", "false")

    config = ConfigLoader(global_dir=tmp_path / "cfg", project_dir=project)

    assert config.get("orchestrator.default_model") == "claude:claude-opus-4-5"
    assert config.get_bool("orchestrator.steer_enabled", True) is False


def test_insecure_credentials_rejected(tmp_path: Path, clean_env) -> None:
    if os.name != "posix":
        pytest.skip("permission bits are POSIX only")
    cfg = tmp_path / "cfg"
    cfg.mkdir()
    creds = cfg / "credentials.toml"
    creds.write_text('[claude]\napi_key = "sk"\n')
    creds.chmod(0o644)
    with pytest.raises(PermissionError):
        ConfigLoader(global_dir=cfg, project_dir=tmp_path / "none")


def test_registry_families_from_config(tmp_path: Path, clean_env) -> None:
    config = _write_config(
        tmp_path / "cfg",
        """
[providers.claude]
family = "cli"
vendor = "claude"
label = "Claude"
command = "claude"
args = "--permission-mode plan"
models = [" claude-opus-4-5 ", "claude-opus-4-5", ""]

[providers.gemini]
family = "http"
vendor = "gemini"
label = "Gemini"
api_key = "g-key"

[providers.acp]
family = "session"
label = "ACP"
command = "acp-agent"

[providers.broken]
family = "session"
label = "Broken"
""",
    )
    registry = ProviderRegistry.from_config(config, CredentialsManager(config))

    claude = registry.get("claude")
    assert isinstance(claude, CliProvider)
    assert claude.style == CliStyle.STREAM_JSON
    assert claude.args == ("--permission-mode", "plan")
    assert claude.models == ("claude-opus-4-5",)
    assert not claude.has_api_fallback

    gemini = registry.get("gemini")
    assert isinstance(gemini, HttpProvider)
    assert registry.models_for("gemini") == ("gemini-3-pro-preview", "gemini-3-flash-preview", "gemini-2.5-pro")

    assert isinstance(registry.get("acp"), SessionProvider)
    assert isinstance(registry.get("agent"), AgentProvider)

    with pytest.raises(ConfigurationError, match="Broken not configured. Set a CLI command."):
        registry.get("broken")


def test_vendor_without_command_or_key_is_unconfigured(tmp_path: Path, clean_env) -> None:
    config = _write_config(tmp_path / "cfg", '[providers.gemini]\nfamily = "cli"\nlabel = "Gemini"\n')
    registry = ProviderRegistry.from_config(config, CredentialsManager(config))
    with pytest.raises(ConfigurationError, match="Gemini not configured. Set CLI command or API key."):
        registry.resolve("gemini:gemini-2.5-pro")


def test_cli_api_key_comes_from_environment(tmp_path: Path, clean_env) -> None:
    clean_env.setenv("ANTHROPIC_API_KEY", "sk-env")
    config = _write_config(tmp_path / "cfg", '[providers.claude]\nvendor = "claude"\ncommand = "claude"\n')
    registry = ProviderRegistry.from_config(config, CredentialsManager(config))
    provider = registry.get("claude")
    assert provider.api_key == "sk-env"
    assert provider.has_api_fallback


def test_resolve_selector() -> None:
    registry = ProviderRegistry(
        [AgentProvider("agent"), HttpProvider("claude", "Claude", "claude", "sk")],
    )
    selection = registry.resolve("claude:claude-haiku-4-5")
    assert selection.provider.id == "claude"
    assert selection.model == "claude-haiku-4-5"

    selection = registry.resolve("gpt-5")
    assert selection.provider.id == "agent"
    assert selection.model == "gpt-5"

    assert registry.resolve(None).model is None
    with pytest.raises(ConfigurationError, match="Unknown provider: nope"):
        registry.resolve("nope:model")


def test_normalize_model_list() -> None:
    assert normalize_model_list([" a ", "b", "a", "", "c"]) == ("a", "b", "c")


def test_general_section_only_carries_log_dir(tmp_path: Path, clean_env) -> None:
    config = _write_config(tmp_path / "cfg", f'[general]\nlog_dir = "{(tmp_path / "logs").as_posix()}"\n')
    assert config.log_dir == tmp_path / "logs"
    assert "log_level" not in config.get("general")
    default = ConfigLoader(global_dir=tmp_path / "fresh", project_dir=tmp_path / "none")
    assert "log_level" not in (tmp_path / "fresh" / "config.toml").read_text()
    assert default.log_dir is None
