"""Configuration loader for Switchboard (global + project TOML with env overrides)."""

from __future__ import annotations

import os
import platform
import stat
from pathlib import Path
from typing import Any, Dict, Optional

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python <3.11
    import tomli as tomllib  # type: ignore


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigLoader:
    """
    Handles configuration loading from multiple sources with priority resolution.

    Priority (highest → lowest):
    1. Command-line arguments (not handled here)
    2. Environment variables (SWITCHBOARD_*)
    3. Project config (.switchboard/config.toml)
    4. Global config (~/.config/switchboard/config.toml)
    5. Built-in defaults
    """

    def __init__(self, global_dir: Path | None = None, project_dir: Path | None = None) -> None:
        self.global_dir = global_dir or self.get_global_config_dir()
        self.project_dir = project_dir if project_dir is not None else self.get_project_config_dir()

        self.config: Dict[str, Any] = {}
        self.credentials: Dict[str, Any] = {}

        self._load_all()

    # ------------------------------------------------------------------ #
    # Public getters
    # ------------------------------------------------------------------ #
    def get(self, key: str, default: Any = None) -> Any:
        """Get config value by dot-separated key."""
        keys = key.split(".")
        value: Any = self.config
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get a boolean value, accepting string forms set through env overrides."""
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        return default

    def get_credential(self, provider: str, key: str) -> Optional[str]:
        """Get credential for a provider."""
        return self.credentials.get(provider, {}).get(key)

    def providers(self) -> Dict[str, Dict[str, Any]]:
        """Return raw provider tables keyed by provider id."""
        raw = self.get("providers", {}) or {}
        return {key: value for key, value in raw.items() if isinstance(value, dict)}

    @property
    def log_dir(self) -> Path | None:
        value = self.get("general.log_dir")
        return Path(value).expanduser() if value else None

    # ------------------------------------------------------------------ #
    # Load/merge helpers
    # ------------------------------------------------------------------ #
    def _load_all(self) -> None:
        """Load all configuration files with proper priority."""
        self._load_global_config()
        self._load_credentials()

        if self.project_dir:
            self._load_project_config()

        self._apply_env_overrides()

    def _load_global_config(self) -> None:
        """Load global configuration."""
        self.config = self._get_default_config()
        config_file = self.global_dir / "config.toml"
        if config_file.exists():
            with open(config_file, "rb") as f:
                self._deep_merge(self.config, tomllib.load(f))
        else:
            self._create_default_config()

    def _load_credentials(self) -> None:
        """Load credentials with security checks."""
        creds_file = self.global_dir / "credentials.toml"

        if not creds_file.exists():
            self._create_default_credentials()
            return

        if platform.system() != "Windows":
            st = creds_file.stat()
            # world/group readable bits disallowed
            if st.st_mode & (stat.S_IRWXG | stat.S_IRWXO):
                raise PermissionError(
                    f"Insecure permissions on {creds_file}. Run: chmod 600 {creds_file}"
                )

        with open(creds_file, "rb") as f:
            self.credentials = tomllib.load(f)

    def _load_project_config(self) -> None:
        """Load project-specific config and merge with global."""
        config_file = self.project_dir / "config.toml"
        if config_file.exists():
            with open(config_file, "rb") as f:
                project_config = tomllib.load(f)
                self._deep_merge(self.config, project_config)

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides (SWITCHBOARD_SECTION_KEY)."""
        env_prefix = "SWITCHBOARD_"
        for key, value in os.environ.items():
            if not key.startswith(env_prefix):
                continue
            section, _, name = key[len(env_prefix) :].lower().partition("_")
            if not name:
                continue
            self._set_nested(self.config, f"{section}.{name}", value)

    # ------------------------------------------------------------------ #
    # Static paths/helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def get_global_config_dir() -> Path:
        """Get platform-specific global config directory following XDG spec."""
        system = platform.system()
        if system == "Windows":
            base = Path(os.environ.get("APPDATA", "~\\AppData\\Roaming")).expanduser()
        elif system == "Darwin":
            xdg = os.environ.get("XDG_CONFIG_HOME")
            base = Path(xdg) if xdg else Path.home() / ".config"
        else:
            base = Path(os.environ.get("XDG_CONFIG_HOME", "~/.config")).expanduser()
        return base / "switchboard"

    @staticmethod
    def get_project_config_dir() -> Path | None:
        """Find .switchboard directory in current or parent directories."""
        current = Path.cwd()
        for parent in [current] + list(current.parents):
            config_dir = parent / ".switchboard"
            if config_dir.is_dir():
                return config_dir
        return None

    # ------------------------------------------------------------------ #
    # Persistence helpers
    # ------------------------------------------------------------------ #
    def _create_default_config(self) -> None:
        self.global_dir.mkdir(parents=True, exist_ok=True)
        config_file = self.global_dir / "config.toml"
        with open(config_file, "w", encoding="utf-8") as f:
            f.write(self._get_default_config_toml())

    def _create_default_credentials(self) -> None:
        self.global_dir.mkdir(parents=True, exist_ok=True)
        creds_file = self.global_dir / "credentials.toml"
        with open(creds_file, "w", encoding="utf-8") as f:
            f.write("# Add your API credentials here, e.g.\n# [claude]\n# api_key = \"...\"\n\n")
        if platform.system() != "Windows":
            os.chmod(creds_file, 0o600)

    # ------------------------------------------------------------------ #
    # Default content
    # ------------------------------------------------------------------ #
    def _get_default_config(self) -> Dict[str, Any]:
        """Built-in defaults."""
        return {
            "general": {
                "log_dir": "",
            },
            "orchestrator": {
                "steer_enabled": True,
                "default_model": "",
                "language_directive": True,
                "workspace_path": "",
                "agent_provider": "agent",
            },
            "providers": {
                "agent": {
                    "family": "agent",
                    "label": "Agent",
                },
            },
        }

    def _get_default_config_toml(self) -> str:
        """Default config TOML text for first-run creation."""
        return "\n".join(
            [
                "[general]",
                'log_dir = ""',
                "",
                "[orchestrator]",
                "steer_enabled = true",
                'default_model = ""',
                "language_directive = true",
                'workspace_path = ""',
                'agent_provider = "agent"',
                "",
                "[providers.agent]",
                'family = "agent"',
                'label = "Agent"',
                "",
                "# [providers.claude]",
                '# family = "cli"',
                '# vendor = "claude"',
                '# label = "Claude"',
                '# command = "claude"',
                '# args = ""',
                "",
                "# [providers.gemini]",
                '# family = "http"',
                '# vendor = "gemini"',
                '# label = "Gemini"',
                "",
            ]
        )

    # ------------------------------------------------------------------ #
    # Utility helpers
    # ------------------------------------------------------------------ #
    def _deep_merge(self, base: dict, override: dict) -> None:
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _set_nested(self, d: dict, path: str, value: Any) -> None:
        keys = path.split(".")
        for key in keys[:-1]:
            d = d.setdefault(key, {})
        d[keys[-1]] = value


Config = ConfigLoader

__all__ = ["ConfigLoader", "Config"]
