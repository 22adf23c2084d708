"""Credential lookup for vendor adapters using ConfigLoader TOML credentials."""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

from ..config import ConfigLoader


class CredentialsManager:
    """Loads vendor credentials from env or ~/.config/switchboard/credentials.toml."""

    ENV_VARS: Dict[str, tuple[str, ...]] = {
        "claude": ("ANTHROPIC_API_KEY",),
        "gemini": ("GEMINI_API_KEY", "GOOGLE_GENERATIVE_AI_API_KEY"),
    }

    def __init__(self, config: Optional[ConfigLoader] = None) -> None:
        self.config = config or ConfigLoader()

    def get_api_key(self, provider_id: str, vendor: Optional[str] = None) -> Optional[str]:
        """Return the API key for a provider, preferring env var overrides."""
        for env_var in self.ENV_VARS.get(vendor or provider_id, ()):
            value = os.getenv(env_var)
            if value:
                return value

        stored = self.config.get_credential(provider_id, "api_key")
        if stored is None and vendor and vendor != provider_id:
            stored = self.config.get_credential(vendor, "api_key")
        return stored.strip() if isinstance(stored, str) and stored.strip() else None

    def get_base_url(self, provider_id: str, default: Optional[str] = None) -> Optional[str]:
        """Return base URL for provider if configured."""
        return self.config.get_credential(provider_id, "base_url") or default

    def set_provider(self, provider_id: str, data: Dict[str, Any]) -> None:
        """Update in-memory credentials for a provider."""
        providers = self.config.credentials.setdefault(provider_id, {})
        providers.update(data)
