"""Provider registry: tagged provider configurations and model selector resolution."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..config import ConfigLoader
from .base import ConfigurationError
from .credentials import CredentialsManager


class ProviderFamily(Enum):
    AGENT = "agent"
    SESSION = "session"
    CLI = "cli"
    HTTP = "http"


class ProtocolKind(Enum):
    RPC = "rpc"
    SESSION = "session"
    CLI = "cli"
    HTTP = "http"


class CliStyle(Enum):
    STREAM_JSON = "stream-json"
    PLAIN = "plain"


VENDORS = ("claude", "gemini")

# Used when a provider configures no model list and the vendor cannot be queried.
FALLBACK_MODELS: Dict[str, Tuple[str, ...]] = {
    "claude": ("claude-sonnet-4-5", "claude-opus-4-5", "claude-haiku-4-5"),
    "gemini": ("gemini-3-pro-preview", "gemini-3-flash-preview", "gemini-2.5-pro"),
}

DEFAULT_CLI_STYLES: Dict[str, CliStyle] = {
    "claude": CliStyle.STREAM_JSON,
    "gemini": CliStyle.PLAIN,
}


@dataclass(frozen=True)
class AgentProvider:
    """Orchestrated agent runtime reached over turn/start and turn/interrupt."""

    id: str
    label: str = "Agent"
    models: Tuple[str, ...] = ()

    family: ClassVar[ProviderFamily] = ProviderFamily.AGENT
    protocol: ClassVar[ProtocolKind] = ProtocolKind.RPC


@dataclass(frozen=True)
class SessionProvider:
    """Generic streaming-session backend spawned per turn."""

    id: str
    label: str
    command: str
    args: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    models: Tuple[str, ...] = ()

    family: ClassVar[ProviderFamily] = ProviderFamily.SESSION
    protocol: ClassVar[ProtocolKind] = ProtocolKind.SESSION


@dataclass(frozen=True)
class CliProvider:
    """Vendor CLI; ``api_key`` enables the single HTTP fallback."""

    id: str
    label: str
    vendor: str
    command: str
    args: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    api_key: Optional[str] = None
    style: CliStyle = CliStyle.PLAIN
    models: Tuple[str, ...] = ()

    family: ClassVar[ProviderFamily] = ProviderFamily.CLI
    protocol: ClassVar[ProtocolKind] = ProtocolKind.CLI

    @property
    def has_api_fallback(self) -> bool:
        return bool(self.api_key) and self.vendor in VENDORS


@dataclass(frozen=True)
class HttpProvider:
    """Vendor HTTP API."""

    id: str
    label: str
    vendor: str
    api_key: str
    base_url: Optional[str] = None
    models: Tuple[str, ...] = ()

    family: ClassVar[ProviderFamily] = ProviderFamily.HTTP
    protocol: ClassVar[ProtocolKind] = ProtocolKind.HTTP


ProviderConfig = Union[AgentProvider, SessionProvider, CliProvider, HttpProvider]


@dataclass(frozen=True)
class ModelSelection:
    provider: ProviderConfig
    model: Optional[str]


def normalize_model_list(models: Iterable[str]) -> Tuple[str, ...]:
    """Trim, drop empties and de-duplicate while keeping order."""
    seen: Dict[str, None] = {}
    for model in models:
        trimmed = str(model).strip()
        if trimmed:
            seen.setdefault(trimmed, None)
    return tuple(seen)


def split_args(value: Union[str, Sequence[str], None]) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(shlex.split(value))
    return tuple(str(item) for item in value)


class ProviderRegistry:
    """Read-only mapping from provider id to adapter configuration."""

    def __init__(
        self,
        providers: Iterable[ProviderConfig] = (),
        unconfigured: Optional[Mapping[str, str]] = None,
        agent_provider_id: str = "agent",
    ) -> None:
        self._providers: Dict[str, ProviderConfig] = {}
        self._unconfigured: Dict[str, str] = dict(unconfigured or {})
        self.agent_provider_id = agent_provider_id
        for provider in providers:
            self.register(provider)

    @classmethod
    def from_config(
        cls, config: ConfigLoader, credentials: Optional[CredentialsManager] = None
    ) -> "ProviderRegistry":
        """Build the registry from the ``[providers.<id>]`` tables."""
        credentials = credentials or CredentialsManager(config)
        registry = cls(agent_provider_id=config.get("orchestrator.agent_provider", "agent"))
        for provider_id, raw in config.providers().items():
            registry._load_entry(provider_id, raw, credentials)
        return registry

    def register(self, provider: ProviderConfig) -> None:
        self._providers[provider.id] = provider
        self._unconfigured.pop(provider.id, None)

    def get(self, provider_id: str) -> ProviderConfig:
        """Return a provider or raise ConfigurationError naming what is missing."""
        if provider_id in self._unconfigured:
            raise ConfigurationError(self._unconfigured[provider_id])
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ConfigurationError(f"Unknown provider: {provider_id}") from None

    def resolve(self, selector: Optional[str]) -> ModelSelection:
        """
        Resolve a model selector.

        ``"<providerId>:<model>"`` selects a registered provider. Anything
        else is a model name for the orchestrated agent provider.
        """
        if selector and ":" in selector:
            provider_id, _, model = selector.partition(":")
            return ModelSelection(self.get(provider_id), model.strip() or None)
        return ModelSelection(self.get(self.agent_provider_id), selector or None)

    def models_for(self, provider_id: str) -> Tuple[str, ...]:
        provider = self.get(provider_id)
        if provider.models:
            return provider.models
        vendor = getattr(provider, "vendor", None)
        return FALLBACK_MODELS.get(vendor or "", ())

    def list(self) -> List[ProviderConfig]:
        return list(self._providers.values())

    def unconfigured(self) -> Dict[str, str]:
        return dict(self._unconfigured)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    # ------------------------------------------------------------------ #
    # Loading
    # ------------------------------------------------------------------ #
    def _load_entry(self, provider_id: str, raw: Dict[str, Any], credentials: CredentialsManager) -> None:
        label = str(raw.get("label") or provider_id.title())
        vendor = str(raw.get("vendor") or (provider_id if provider_id in VENDORS else "")).lower()
        family = str(raw.get("family") or ("cli" if vendor else "session")).lower()
        command = str(raw.get("command") or "").strip()
        args = split_args(raw.get("args"))
        env = {str(k): str(v) for k, v in (raw.get("env") or {}).items()}
        models = normalize_model_list(raw.get("models") or ())

        if family == ProviderFamily.AGENT.value:
            self.register(AgentProvider(id=provider_id, label=label, models=models))
            return

        if family == ProviderFamily.SESSION.value:
            if not command:
                self._unconfigured[provider_id] = f"{label} not configured. Set a CLI command."
                return
            self.register(SessionProvider(provider_id, label, command, args, env, models))
            return

        if family not in (ProviderFamily.CLI.value, ProviderFamily.HTTP.value):
            self._unconfigured[provider_id] = f"{label} has unsupported family: {family}"
            return

        api_key = str(raw.get("api_key") or "").strip() or credentials.get_api_key(provider_id, vendor)
        if family == ProviderFamily.CLI.value and command:
            style_name = raw.get("cli_style")
            style = CliStyle(style_name) if style_name else DEFAULT_CLI_STYLES.get(vendor, CliStyle.PLAIN)
            self.register(
                CliProvider(
                    id=provider_id,
                    label=label,
                    vendor=vendor,
                    command=command,
                    args=args,
                    env=env,
                    api_key=api_key,
                    style=style,
                    models=models,
                )
            )
            return

        if api_key and vendor in VENDORS:
            base_url = raw.get("base_url") or credentials.get_base_url(provider_id)
            self.register(HttpProvider(provider_id, label, vendor, api_key, base_url, models))
            return

        if family == ProviderFamily.HTTP.value:
            self._unconfigured[provider_id] = f"{label} not configured. Set an API key."
        else:
            self._unconfigured[provider_id] = f"{label} not configured. Set CLI command or API key."
