"""Base abstractions shared by every protocol adapter."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional


class LLMException(Exception):
    """Base exception for adapter and orchestration errors."""


class ConfigurationError(LLMException):
    """Raised when a provider has no usable credential or command."""


class TransportError(LLMException):
    """Raised when a process or network call fails."""


class ProtocolError(LLMException):
    """Raised when a backend answers without a required field."""


class StructuredOutputError(LLMException):
    """Raised when plan mode cannot obtain valid JSON from the model."""


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    total_cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class RateLimitSnapshot:
    """Rate-limit counters reported by a vendor API on the last response."""

    requests_limit: Optional[int] = None
    requests_remaining: Optional[int] = None
    requests_reset: Optional[str] = None
    tokens_limit: Optional[int] = None
    tokens_remaining: Optional[int] = None
    tokens_reset: Optional[str] = None

    def is_empty(self) -> bool:
        return all(value is None for value in self.__dict__.values())


@dataclass
class AdapterResult:
    text: str
    usage: Optional[Usage] = None
    rate_limits: Optional[RateLimitSnapshot] = None
    turn_id: Optional[str] = None
    metadata: Dict[str, object] = field(default_factory=dict)


DeltaCallback = Callable[[str], None]
UsageCallback = Callable[[Usage], None]
StartedCallback = Callable[[str], None]


class BaseAdapter(ABC):
    """Uniform "send a prompt, stream deltas, resolve with final text" contract."""

    label: str = "provider"

    @abstractmethod
    async def send(
        self,
        prompt: str,
        model: Optional[str],
        on_delta: DeltaCallback,
        on_usage: Optional[UsageCallback] = None,
        *,
        on_started: Optional[StartedCallback] = None,
    ) -> AdapterResult:
        """
        Send a prompt and resolve with the final text.

        Args:
            prompt: Full prompt text.
            model: Model name for the backend, or None for its default.
            on_delta: Receives each text delta in arrival order.
            on_usage: Receives token usage once the backend reports it.
            on_started: Receives the backend identifier for this exchange, if any.
        """
