"""Adapter routing: one adapter per provider family, created on first use."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from ..utils.logger import DebugLogger
from .agent import AgentAdapter, AgentBackend
from .base import BaseAdapter, ConfigurationError
from .claude import ClaudeAdapter
from .cli import CliAdapter
from .gemini import GeminiAdapter
from .registry import AgentProvider, CliProvider, HttpProvider, ProviderConfig, SessionProvider
from .session import ProcessSessionHost, SessionAdapter, SessionHost

LocalAdapter = Union[SessionAdapter, CliAdapter, ClaudeAdapter, GeminiAdapter]


class AdapterRouter:
    """Creates protocol adapters for providers with shared backends and caches them."""

    def __init__(
        self,
        agent_backend: Optional[AgentBackend] = None,
        session_host: Optional[SessionHost] = None,
        workspace: Optional[Path] = None,
        logger: Optional[DebugLogger] = None,
    ) -> None:
        self.agent_backend = agent_backend
        self.session_host: SessionHost = session_host or ProcessSessionHost()
        self.workspace = workspace
        self.logger = logger
        self._cache: Dict[str, object] = {}
        self._http_cache: Dict[Tuple[str, str, Optional[str]], BaseAdapter] = {}

    def agent_adapter(self, provider: AgentProvider) -> AgentAdapter:
        if self.agent_backend is None:
            raise ConfigurationError(f"{provider.label} not configured. No agent backend is connected.")
        cached = self._cache.get(provider.id)
        if isinstance(cached, AgentAdapter):
            return cached
        adapter = AgentAdapter(provider, self.agent_backend, workspace=self.workspace)
        self._cache[provider.id] = adapter
        return adapter

    def local_adapter(self, provider: ProviderConfig) -> BaseAdapter:
        """Return the adapter for a session, CLI or HTTP provider."""
        cached = self._cache.get(provider.id)
        if isinstance(cached, BaseAdapter):
            return cached
        adapter: BaseAdapter
        if isinstance(provider, SessionProvider):
            adapter = SessionAdapter(provider, host=self.session_host, logger=self.logger)
        elif isinstance(provider, CliProvider):
            adapter = CliAdapter(provider, cwd=self.workspace)
        elif isinstance(provider, HttpProvider):
            adapter = self.http_adapter_for(provider.vendor, provider.api_key, provider.base_url, provider.label)
        elif isinstance(provider, AgentProvider):
            raise ValueError(f"Agent provider {provider.id} has no local adapter")
        else:
            raise ValueError(f"Unsupported provider: {provider!r}")
        self._cache[provider.id] = adapter
        return adapter

    def http_adapter_for(
        self, vendor: str, api_key: str, base_url: Optional[str] = None, label: Optional[str] = None
    ) -> BaseAdapter:
        """HTTP adapter for a vendor; also used as the CLI fallback path."""
        key = (vendor, api_key, base_url)
        if key in self._http_cache:
            return self._http_cache[key]
        adapter: BaseAdapter
        if vendor == "claude":
            adapter = ClaudeAdapter(api_key=api_key, label=label or "Claude", base_url=base_url)
        elif vendor == "gemini":
            adapter = GeminiAdapter(api_key=api_key, label=label or "Gemini", base_url=base_url)
        else:
            raise ConfigurationError(f"Unsupported vendor: {vendor}")
        self._http_cache[key] = adapter
        return adapter

    def clear(self) -> None:
        self._cache.clear()
        self._http_cache.clear()
